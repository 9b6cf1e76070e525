import asyncio
import argparse
from mcp.server.stdio import stdio_server
from agentloop.db.database import close_db
from agentloop.mcp_server import server

async def main():
    parser = argparse.ArgumentParser(description="AgentLoop MCP stdio mode")
    parser.parse_args()

    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options()
            )
    finally:
        await close_db()

if __name__ == "__main__":
    # Disable logging to stdout to avoid corrupting MCP JSON-RPC
    import logging
    logging.getLogger().setLevel(logging.CRITICAL)
    asyncio.run(main())
