"""Policy-gated shell command execution."""

from mcp_terminal.shell.config import load_policy_file, parse_policy_config, reload_policy
from mcp_terminal.shell.exec import (
    EXEC_TIMEOUT_S,
    MAX_OUTPUT_BYTES,
    CommandError,
    CommandOutcome,
    CommandRequest,
    CommandSuccess,
    CommandWaiting,
    ExecutionEngine,
)
from mcp_terminal.shell.policy import (
    Decision,
    PolicyConfig,
    PolicyDecision,
    PolicyStore,
    decide,
    decide_with_approval,
)

__all__ = [
    "EXEC_TIMEOUT_S",
    "MAX_OUTPUT_BYTES",
    "CommandError",
    "CommandOutcome",
    "CommandRequest",
    "CommandSuccess",
    "CommandWaiting",
    "Decision",
    "ExecutionEngine",
    "PolicyConfig",
    "PolicyDecision",
    "PolicyStore",
    "decide",
    "decide_with_approval",
    "load_policy_file",
    "parse_policy_config",
    "reload_policy",
]
