"""Run the MCP pentest server: ``python -m mcp_pentest``."""

import sys

from mcp_pentest.server import main

if __name__ == "__main__":
    sys.exit(main())
