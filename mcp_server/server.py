"""
Mail Mirror MCP Server

A Model Context Protocol server that exposes search over the local mail
mirror to AI assistants.

Architecture:
    MCP client -> MCP Server -> SyncSession (read-only use) -> Database

The server never connects to IMAP; it reads what the sync engine has
mirrored. Query embeddings run in-process.

Usage:
    python -m mcp_server

Security:
- Transport: stdio (local only, no network exposure)
- Audit: All tool calls are logged (query text redacted)
"""
import asyncio
import base64
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import (
    Tool,
    TextContent,
)

from mailmirror.core.database.models import schema_snapshot
from mailmirror.core.database.repository import MessageNotFoundError
from mailmirror.core.sync.session import SyncSession
from mcp_server.schemas import (
    AccountResult,
    AttachmentResult,
    BlockedResourceInfo,
    FolderResult,
    MessageBodyResponse,
    MessageResult,
    SchemaSnapshot,
    SearchResponse,
)

logger = logging.getLogger(__name__)

SEARCH_MODES = ["auto", "subject", "sender", "content", "all"]

TOOLS = [
    Tool(
        name="search_messages",
        description="""Search mirrored email.

Modes:
- auto (default): sender search if the query contains '@', otherwise all signals
- subject: every word must appear in the subject
- sender: match sender address or display name
- content: semantic (vector) search over subject and body
- all: subject + sender + content, exact matches ranked first

An empty query lists the most recent messages. Returns up to 50 results;
pass next_cursor back as cursor to page further.""",
        inputSchema={
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search text, address or name"},
                "mode": {"type": "string", "enum": SEARCH_MODES, "default": "auto"},
                "since": {"type": "string", "description": "Only messages received on/after this ISO date"},
                "cursor": {"type": "integer", "description": "Only messages with a UID below this value"},
            },
            "required": ["query"],
        },
    ),
    Tool(
        name="get_message_body",
        description="Get the sanitized HTML body and header summary of a message (remote content is blocked).",
        inputSchema={
            "type": "object",
            "properties": {
                "folder": {"type": "string", "description": "Full folder name, e.g. INBOX"},
                "uid": {"type": "integer", "description": "IMAP UID"},
            },
            "required": ["folder", "uid"],
        },
    ),
    Tool(
        name="list_folders",
        description="List mirrored IMAP folders.",
        inputSchema={"type": "object", "properties": {}, "required": []},
    ),
    Tool(
        name="list_attachments",
        description="List attachments stored for a message; optionally return their content as base64.",
        inputSchema={
            "type": "object",
            "properties": {
                "folder": {"type": "string", "description": "Full folder name"},
                "uid": {"type": "integer", "description": "IMAP UID"},
                "content_type_prefix": {"type": "string", "description": "Only types starting with this, e.g. image/"},
                "include_data": {"type": "boolean", "default": False, "description": "Return base64 content"},
                "max_bytes": {"type": "integer", "description": "With include_data, bytes read per attachment"},
            },
            "required": ["folder", "uid"],
        },
    ),
    Tool(
        name="list_accounts",
        description="List mirrored IMAP accounts (id, display name, server, username, last sync). No secrets.",
        inputSchema={"type": "object", "properties": {}, "required": []},
    ),
    Tool(
        name="get_schema_snapshot",
        description="Tables and columns of the mirror database.",
        inputSchema={"type": "object", "properties": {}, "required": []},
    ),
]


def audit_log(tool_name: str, arguments: dict, user_info: str = "local"):
    """Log tool usage for audit trail."""
    # Don't log query text, just its length
    safe_args = {
        k: v if k != 'query' else f"<{len(str(v))} chars>"
        for k, v in arguments.items()
    }
    logger.info(f"AUDIT: tool={tool_name} user={user_info} args={safe_args}")


def parse_since(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


async def handle_tool(session: SyncSession, name: str, arguments: dict) -> dict:
    """Run one tool against the session and return a JSON-serializable dict."""
    if name == "search_messages":
        mode = arguments.get("mode", "auto")
        if mode not in SEARCH_MODES:
            return {"error": f"Unknown mode: {mode}"}
        results = await session.search(
            arguments.get("query", ""),
            mode=mode,
            since_utc=parse_since(arguments.get("since")),
            cursor=arguments.get("cursor"),
        )
        status = session.status
        response = SearchResponse(
            query=arguments.get("query", ""),
            mode=mode,
            total=len(results),
            results=[MessageResult(**r.to_dict()) for r in results],
            next_cursor=min(r.uid for r in results) if results else None,
            warning=status.message if status.is_error else None,
        )
        return response.model_dump()

    if name == "get_message_body":
        try:
            view = await session.load_body(arguments["folder"], int(arguments["uid"]))
        except MessageNotFoundError as e:
            return {"error": str(e)}
        return MessageBodyResponse(
            folder=view.folder,
            uid=view.uid,
            subject=view.subject,
            from_display=view.from_display,
            from_address=view.from_address,
            received=view.received.isoformat() if view.received else None,
            to=view.to,
            cc=view.cc,
            bcc=view.bcc,
            html=view.html,
            blocked_resources=[
                BlockedResourceInfo(url=r.url, reason=r.reason.value) for r in view.blocked_resources
            ],
        ).model_dump()

    if name == "list_folders":
        folders = await session.list_folders()
        return {"folders": [
            FolderResult(
                full_name=f.full_name,
                display_name=f.display_name,
                message_count=f.message_count,
                unread_count=f.unread_count,
            ).model_dump()
            for f in folders
        ]}

    if name == "list_attachments":
        max_bytes = arguments.get("max_bytes")
        try:
            attachments = await session.list_attachments(
                arguments["folder"],
                int(arguments["uid"]),
                content_type_prefix=arguments.get("content_type_prefix"),
                include_data=bool(arguments.get("include_data", False)),
                max_bytes=int(max_bytes) if max_bytes is not None else None,
            )
        except MessageNotFoundError as e:
            return {"error": str(e)}
        return {"attachments": [
            AttachmentResult(
                file_name=a.file_name,
                content_type=a.content_type,
                disposition=a.disposition,
                size_bytes=a.size_bytes,
                sha256=a.sha256,
                storage_key=a.storage_key,
                base64_data=base64.b64encode(a.data).decode("ascii") if a.data is not None else None,
            ).model_dump()
            for a in attachments
        ]}

    if name == "list_accounts":
        accounts = await session.list_accounts()
        return {"accounts": [
            AccountResult(
                id=a.id,
                display_name=a.display_name,
                server=a.server,
                username=a.username,
                last_synced_at=a.last_synced_at.isoformat() if a.last_synced_at else None,
            ).model_dump()
            for a in accounts
        ]}

    if name == "get_schema_snapshot":
        return SchemaSnapshot(tables=schema_snapshot()).model_dump()

    return {"error": f"Unknown tool: {name}"}


def create_server(session: Optional[SyncSession] = None) -> Server:
    """
    Create and configure the MCP server.

    Args:
        session: Session to serve; by default one is built from settings
                 on the first tool call
    """
    server = Server("mail-mirror")
    state = {"session": session}

    def get_session() -> SyncSession:
        if state["session"] is None:
            from mailmirror.core.database import init_db

            session_factory = init_db()
            if session_factory is None:
                raise RuntimeError("DATABASE_URL is not configured")
            state["session"] = SyncSession(session_factory)
        return state["session"]

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """Return list of available tools."""
        return TOOLS

    @server.call_tool()
    async def call_tool(name: str, arguments: dict) -> list[TextContent]:
        """Execute a tool and return results."""
        try:
            audit_log(name, arguments)
            result = await handle_tool(get_session(), name, arguments or {})
            return [TextContent(
                type="text",
                text=json.dumps(result, indent=2, default=str)
            )]
        except Exception as e:
            logger.error(f"Tool execution error: {e}", exc_info=True)
            return [TextContent(
                type="text",
                text=json.dumps({"error": str(e)})
            )]

    return server


async def run_server():
    """Run the MCP server using stdio transport."""
    server = create_server()

    async with stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream,
            write_stream,
            server.create_initialization_options()
        )


def main():
    """Entry point for the MCP server."""
    from dotenv import load_dotenv

    load_dotenv()
    # stdout carries the protocol; logs go to stderr
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr,
    )
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
