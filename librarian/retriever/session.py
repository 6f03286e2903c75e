"""
Session Context

Resolves the active conversation for a (user, organization, project,
application) and appends turns to it.

Loading is read-only: the context procedure returns or opens a
conversation inside a sliding idle window and the recent turns. Turns are
written separately, through append_message, once the pipeline has
something to record.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from ..common.errors import StoreError
from ..common.schemas import PreloadedContext, SessionContext
from ..common.store_client import StoreClient

logger = logging.getLogger("librarian.retriever.session")

AGENT_TYPE = "librarian_v3"
DEFAULT_APP_ID = "arpet"


def _decode_list(value: Any, name: str) -> List[Any]:
    """Lists may come back JSON-encoded; anything undecodable becomes []."""
    if value is None:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            logger.warning("Could not decode %s from context procedure", name)
            return []
    return value if isinstance(value, list) else []


def session_from_preloaded(ctx: PreloadedContext, default_app_id: str = DEFAULT_APP_ID) -> SessionContext:
    """Use a caller-resolved context verbatim."""
    return SessionContext(
        conversation_id=ctx.conversation_id,
        effective_org_id=ctx.effective_org_id,
        effective_app_id=ctx.effective_app_id or default_app_id,
        system_prompt=ctx.system_prompt,
        gemini_system_prompt=ctx.gemini_system_prompt,
        parameters=dict(ctx.parameters),
        config_source=ctx.config_source or "preloaded",
        project_identity=ctx.project_identity,
        conversation_summary=ctx.conversation_summary,
        conversation_first_message=ctx.conversation_first_message,
        recent_messages=list(ctx.recent_messages),
        message_count=ctx.message_count,
        previous_source_file_ids=list(ctx.previous_source_file_ids),
        key_documents=list(ctx.key_documents),
    )


def session_from_row(row: Dict[str, Any], default_app_id: str = DEFAULT_APP_ID) -> SessionContext:
    """Map a get_agent_context row (out_* columns) to a SessionContext."""
    conversation_id = row.get("out_conversation_id")
    if not conversation_id:
        raise StoreError("Context procedure returned no conversation")

    return SessionContext(
        conversation_id=str(conversation_id),
        effective_org_id=row.get("out_effective_org_id") or None,
        effective_app_id=row.get("out_effective_app_id") or default_app_id,
        system_prompt=row.get("out_system_prompt"),
        gemini_system_prompt=row.get("out_gemini_system_prompt"),
        parameters=row.get("out_parameters") or {},
        config_source=row.get("out_config_source") or "fallback",
        project_identity=row.get("out_project_identity") or None,
        conversation_summary=row.get("out_conversation_summary") or None,
        conversation_first_message=row.get("out_conversation_first_message") or None,
        recent_messages=_decode_list(row.get("out_recent_messages"), "recent_messages"),
        message_count=row.get("out_message_count") or 0,
        previous_source_file_ids=_decode_list(row.get("out_previous_source_file_ids"), "previous_source_file_ids"),
        key_documents=_decode_list(row.get("out_documents_cles"), "documents_cles"),
    )


class SessionLoader:
    """Conversation context resolution and turn persistence."""

    def __init__(self, store: StoreClient, default_app_id: str = DEFAULT_APP_ID):
        self._store = store
        self._default_app_id = default_app_id

    async def load(
        self,
        user_id: str,
        org_id: Optional[str],
        project_id: Optional[str],
        app_id: Optional[str],
        preloaded: Optional[PreloadedContext] = None,
        timeout_minutes: int = 30,
        messages_count: int = 4,
    ) -> SessionContext:
        """
        Resolve the session for a request.

        Args:
            user_id: Requesting user
            org_id: Organization id, if any
            project_id: Project id, if any
            app_id: Application id
            preloaded: Context already resolved by the caller
            timeout_minutes: Conversation idle window
            messages_count: Number of recent turns to return

        Returns:
            SessionContext

        Raises:
            StoreError: The context procedure failed or returned nothing usable
        """
        if preloaded is not None:
            logger.debug("Using preloaded session context")
            return session_from_preloaded(preloaded, self._default_app_id)

        data = await self._store.rpc(
            "get_agent_context",
            {
                "p_user_id": user_id,
                "p_org_id": org_id,
                "p_project_id": project_id,
                "p_app_id": app_id,
                "p_agent_type": AGENT_TYPE,
                "p_conversation_timeout_minutes": timeout_minutes,
                "p_context_messages_count": messages_count,
            },
        )
        row = data[0] if isinstance(data, list) and data else data
        if not isinstance(row, dict):
            raise StoreError("Context procedure returned no rows")
        return session_from_row(row, self._default_app_id)

    async def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        sources: Optional[List[Dict[str, Any]]] = None,
        generation_mode: Optional[str] = None,
        processing_time_ms: Optional[int] = None,
    ) -> bool:
        """
        Append a turn to the conversation.

        Failures are logged and reported through the return value; they
        never interrupt the response stream.
        """
        try:
            await self._store.rpc(
                "add_message",
                {
                    "p_conversation_id": conversation_id,
                    "p_role": role,
                    "p_content": content,
                    "p_sources": json.dumps(sources, ensure_ascii=False) if sources is not None else None,
                    "p_generation_mode": generation_mode,
                    "p_processing_time_ms": processing_time_ms,
                },
            )
            return True
        except StoreError as e:
            logger.warning("Failed to persist %s message: %s", role, e)
            return False
