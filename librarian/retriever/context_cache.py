"""
Context Cache Manager

Keeps large documents from being re-sent to the large-context service on
every turn, at two levels:

1. per file: the remote file handle is recorded on sources.files with an
   expiry and reused until it lapses
2. per (file set, prompt, model): the server-side cached context is
   recorded in rag.gemini_caches and reused while unexpired

Cache identity is the triple (sorted file ids hash, prompt hash, model);
changing any of them, even slightly, creates a new entry.
"""

import asyncio
import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from ..common.errors import ContextCacheError, StoreError
from ..common.gemini_client import GeminiClient
from ..common.schemas import ContextCacheEntry, SourceFile
from ..common.store_client import StoreClient

logger = logging.getLogger("librarian.retriever.context_cache")


def hash_file_ids(file_ids: List[str]) -> str:
    """SHA-256 hex of the sorted, comma-joined file ids (order-insensitive)."""
    joined = ",".join(sorted(file_ids))
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def hash_prompt(prompt: str) -> str:
    """First 32 hex chars of the SHA-256 of the exact prompt text."""
    return hashlib.sha256(prompt.encode("utf-8")).hexdigest()[:32]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _org_scope(org_id: Optional[str]) -> Dict[str, str]:
    if org_id:
        return {"or": f"(org_id.eq.{org_id},org_id.is.null)"}
    return {"org_id": "is.null"}


class ContextCacheManager:
    """Remote file handles and cached contexts for the full-document path."""

    def __init__(self, store: StoreClient, large_context: GeminiClient):
        self._store = store
        self._large_context = large_context

    # ------------------------------------------------------------------
    # File handles
    # ------------------------------------------------------------------

    async def ensure_uploaded(self, file: SourceFile, ttl_hours: int) -> str:
        """
        Return a live remote handle for file, uploading it if needed.

        Raises:
            ContextCacheError: Download or upload failed
        """
        now = _utcnow()
        try:
            rows = await self._store.select(
                "files",
                schema="sources",
                columns="google_file_uri,google_uri_expires_at",
                filters={"id": f"eq.{file.file_id}"},
                limit=1,
            )
        except StoreError as e:
            logger.warning("Could not read stored handle for %s, re-uploading: %s", file.original_filename, e)
            rows = []

        if rows:
            uri = rows[0].get("google_file_uri")
            expires_at = _parse_timestamp(rows[0].get("google_uri_expires_at"))
            if uri and expires_at and expires_at > now:
                logger.debug("Reusing remote handle for %s", file.original_filename)
                return uri

        logger.info("Uploading %s to the large-context service", file.original_filename)
        try:
            data = await self._store.download(file.storage_bucket, file.storage_path)
        except StoreError as e:
            raise ContextCacheError(f"Could not download {file.original_filename}") from e

        uri = await self._large_context.upload_file(data, file.mime_type, file.original_filename)

        expires_at = now + timedelta(hours=ttl_hours)
        try:
            await self._store.update(
                "files",
                schema="sources",
                values={"google_file_uri": uri, "google_uri_expires_at": expires_at.isoformat()},
                filters={"id": f"eq.{file.file_id}"},
            )
        except StoreError as e:
            logger.warning("Could not record remote handle for %s: %s", file.original_filename, e)
        return uri

    async def ensure_all_uploaded(self, files: List[SourceFile], ttl_hours: int) -> List[str]:
        """Upload files concurrently; handles are returned in file order."""
        return list(await asyncio.gather(*(self.ensure_uploaded(f, ttl_hours) for f in files)))

    # ------------------------------------------------------------------
    # Cached contexts
    # ------------------------------------------------------------------

    async def find(
        self,
        file_ids_hash: str,
        prompt_hash: str,
        model: str,
        org_id: Optional[str],
    ) -> Optional[ContextCacheEntry]:
        """Look up a live entry matching all three key parts."""
        now = _utcnow()
        filters = {
            "file_ids_hash": f"eq.{file_ids_hash}",
            "system_prompt_hash": f"eq.{prompt_hash}",
            "model": f"eq.{model}",
            "expires_at": f"gt.{now.isoformat()}",
        }
        filters.update(_org_scope(org_id))
        try:
            rows = await self._store.select(
                "gemini_caches",
                schema="rag",
                columns="cache_name,file_ids_hash,system_prompt_hash,model,expires_at,file_ids",
                filters=filters,
                order="expires_at.desc",
                limit=1,
            )
        except StoreError as e:
            logger.warning("Cache lookup failed, creating a new context: %s", e)
            return None

        for row in rows:
            expires_at = _parse_timestamp(row.get("expires_at"))
            if expires_at is None:
                continue
            entry = ContextCacheEntry(
                cache_name=row.get("cache_name") or "",
                file_ids_hash=row.get("file_ids_hash") or "",
                system_prompt_hash=row.get("system_prompt_hash") or "",
                model=row.get("model") or "",
                expires_at=expires_at,
                file_ids=list(row.get("file_ids") or []),
            )
            if entry.cache_name and entry.matches(file_ids_hash, prompt_hash, model) and entry.is_live(now):
                return entry
        return None

    async def resolve(
        self,
        files: List[SourceFile],
        handles: List[str],
        system_prompt: str,
        model: str,
        ttl_minutes: int,
        org_id: Optional[str],
        app_id: str,
    ) -> Tuple[str, bool]:
        """
        Reuse or create the cached context for this file set, prompt and model.

        Args:
            files: Retained files, in catalog order
            handles: Remote handles, parallel to files
            system_prompt: Exact system prompt text
            model: Generation model
            ttl_minutes: Lifetime of a new context
            org_id: Organization scope of the entry (None for global)
            app_id: Application the entry belongs to

        Returns:
            (cache_name, was_reused)
        """
        file_ids = [f.file_id for f in files]
        file_ids_hash = hash_file_ids(file_ids)
        prompt_hash = hash_prompt(system_prompt)

        entry = await self.find(file_ids_hash, prompt_hash, model, org_id)
        if entry is not None:
            logger.info("Reusing cached context %s", entry.cache_name)
            try:
                await self._store.update(
                    "gemini_caches",
                    schema="rag",
                    values={"last_used_at": _utcnow().isoformat()},
                    filters={"cache_name": f"eq.{entry.cache_name}"},
                )
            except StoreError as e:
                logger.warning("Could not touch cached context %s: %s", entry.cache_name, e)
            return entry.cache_name, True

        logger.info("Creating cached context (%d files, model=%s)", len(files), model)
        ttl_seconds = ttl_minutes * 60
        cache_name, total_tokens = await self._large_context.create_cached_context(
            model,
            system_prompt,
            [(uri, f.mime_type) for f, uri in zip(files, handles)],
            ttl_seconds,
        )

        try:
            await self._store.insert(
                "gemini_caches",
                schema="rag",
                row={
                    "file_ids_hash": file_ids_hash,
                    "file_ids": file_ids,
                    "cache_name": cache_name,
                    "model": model,
                    "org_id": org_id,
                    "app_id": app_id,
                    "system_prompt_hash": prompt_hash,
                    "expires_at": (_utcnow() + timedelta(seconds=ttl_seconds)).isoformat(),
                    "total_tokens": total_tokens,
                    "file_count": len(files),
                },
            )
        except StoreError as e:
            logger.warning("Could not record cached context %s: %s", cache_name, e)
        return cache_name, False
