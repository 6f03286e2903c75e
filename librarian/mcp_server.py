"""
Librarian MCP Server.

Exposes the answering pipeline as an MCP tool over stdio.

Expected MCP Tool Return Format:
{
    "ok": bool,
    "results": Any,          # Present if ok is True
    "error": str             # Present if ok is False
}
"""

import argparse
import logging
import os
from typing import Annotated, Any, Dict, List, Optional

from dotenv import load_dotenv
from fastmcp import FastMCP
from mcp.types import ToolAnnotations
from pydantic import Field, ValidationError

from .common.config import load_config
from .common.errors import RequestValidationError
from .common.schemas import LibrarianRequest
from .retriever.events import EventKind
from .retriever.pipeline import Librarian, create_librarian

logger = logging.getLogger("librarian.mcp")


async def collect_answer(librarian: Librarian, request: LibrarianRequest) -> Dict[str, Any]:
    """
    Drain one pipeline run into a single tool result.

    Token events are concatenated into the answer; the sources event
    supplies the citations and the mode actually used.
    """
    parts: List[str] = []
    sources: Dict[str, Any] = {}
    async for event in librarian.run(request):
        if event.kind == EventKind.TOKEN:
            parts.append(event.data.get("content", ""))
        elif event.kind == EventKind.SOURCES:
            sources = event.data
        elif event.kind == EventKind.ERROR:
            return {"ok": False, "error": event.data.get("error", "Internal error")}

    return {
        "ok": True,
        "results": {
            "answer": "".join(parts),
            "sources": sources.get("sources", []),
            "generation_mode": sources.get("generation_mode"),
            "conversation_id": sources.get("conversation_id"),
        },
    }


class LibrarianMCPApp:
    """MCP front-end over a Librarian pipeline."""

    def __init__(self, librarian: Librarian, mcp_server_name: str = "librarian") -> None:
        """
        Args:
            librarian (Librarian): The answering pipeline.
            mcp_server_name (str): The advertised MCP server name.
        """
        self.librarian = librarian
        self.mcp = FastMCP(name=mcp_server_name)

        # ---------- MCP Tools: Ask ---------- #
        @self.mcp.tool(
            name="ask_librarian",
            description=(
                "Answer a question from the organization's documents, with citations. "
                "Searches the application, organization, project and user document layers."
            ),
            annotations=ToolAnnotations(readOnlyHint=False, destructiveHint=False)
        )
        async def tool_ask_librarian(
            query: Annotated[str, Field(description="the question to answer")],
            user_id: Annotated[str, Field(description="id of the user asking")],
            org_id: Annotated[Optional[str], Field(description="organization id")] = None,
            project_id: Annotated[Optional[str], Field(description="project id")] = None,
            app_id: Annotated[Optional[str], Field(description="application id")] = None,
            intent: Annotated[Optional[str], Field(description="query intent, e.g. factual, synthesis, comparison")] = None,
            generation_mode: Annotated[str, Field(description="auto, chunks or full-document")] = "auto",
        ) -> Dict[str, Any]:
            """
            MCP tool to answer one question.

            Returns:
                Dict[str, Any]: answer, sources and generation_mode on success.
                The conversation turns are persisted as for any other caller.
            """
            try:
                request = LibrarianRequest(
                    query=query,
                    user_id=user_id,
                    org_id=org_id,
                    project_id=project_id,
                    app_id=app_id,
                    intent=intent,
                    generation_mode=generation_mode,
                )
                Librarian.validate(request)
            except (ValidationError, RequestValidationError) as e:
                return {"ok": False, "error": str(e)}
            return await collect_answer(self.librarian, request)

    def run(self) -> None:
        """Runs the MCP server using stdio transport."""
        self.mcp.run(transport="stdio")


def main() -> None:
    load_dotenv()

    parser = argparse.ArgumentParser(description="Run the Librarian MCP server (stdio).")
    parser.add_argument(
        "--server-name",
        default=os.getenv("MCP_SERVER_NAME", "librarian"),
        help="Advertised MCP server name.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LIBRARIAN_LOG_LEVEL", "WARNING"),
        help="Logging level (logs go to stderr).",
    )
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper())

    librarian, _store = create_librarian(load_config())
    LibrarianMCPApp(librarian, mcp_server_name=args.server_name).run()


if __name__ == "__main__":
    main()
