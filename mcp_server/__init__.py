"""
Mail Mirror MCP Server

Exposes search over the local mail mirror as MCP tools for MCP-compatible
clients.

Architecture:
    MCP client -> MCP Server -> SyncSession -> Database

The server reads the mirror only; syncing is done by the mailmirror CLI.
"""


# Lazy import server functions (requires MCP SDK)
def create_server(session=None):
    """Create the MCP server (requires mcp package)."""
    from mcp_server.server import create_server as _create_server
    return _create_server(session)


def run_server():
    """Run the MCP server (requires mcp package)."""
    from mcp_server.server import run_server as _run_server
    return _run_server()


__all__ = ['create_server', 'run_server']
