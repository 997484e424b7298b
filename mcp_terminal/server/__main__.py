import sys

from mcp_terminal.server.main import main

raise SystemExit(main(sys.argv[1:]))
