import sys

from mcp_terminal.client.main import main

raise SystemExit(main(sys.argv[1:]))
