"""Bulk synchronizer - full resync of one tenant instance from the Provider.

Flow:
1. Page through chats (100 per page, at most 1000 pages).
2. Prefetch group metadata through the cache, 3 groups at a time.
3. For each chat, sequentially: contact, chat, then its messages page by
   page. Known message ids are skipped; inserts are insert-if-absent so a
   concurrent webhook for the same message cannot create a duplicate.
4. Refresh each chat's last-message summary from the newest stored message.

Progress is published to the instance channel after every chat. A failure
on one chat or message is recorded in the stats and the run continues; a
failure listing chats aborts the run with SyncFailedError.
"""

from __future__ import annotations

import contextvars
import dataclasses
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable

from wppgateway.fanout import Publisher
from wppgateway.infra.time import parse_iso, utc_now
from wppgateway.observability.logging import get_logger
from wppgateway.observability.redaction import mask_jid, safe_log_context
from wppgateway.provider.client import Provider
from wppgateway.store.gateway import ChatStore, InstanceNotFoundError
from wppgateway.store.reconcile import (
    contact_fields,
    ensure_contact,
    group_metadata_from_info,
    persist_message,
    refresh_chat_summary,
)
from wppgateway.whatsapp.classify import extract_records, normalize_message_record
from wppgateway.whatsapp.group_cache import GroupMetadataCache
from wppgateway.whatsapp.jid import first_identifier, is_group_id, normalize_conversation_id

from .state import LocalSyncState, SyncState

logger = get_logger(__name__)

CHAT_PAGE_SIZE = 100
MAX_CHAT_PAGES = 1000
MESSAGE_PAGE_SIZE = 100
MAX_MESSAGE_PAGES = 1000

GROUP_BATCH_SIZE = 3
GROUP_BATCH_PAUSE_SECONDS = 0.5
MESSAGE_PAGE_PAUSE_SECONDS = 0.2
CHAT_PAUSE_EVERY = 10
CHAT_PAUSE_SECONDS = 0.1

MAX_ERRORS = 100

MESSAGE_SOURCE = "sync"


@dataclass
class SyncStats:
    """Counters for one sync run."""

    chats_listed: int = 0
    chats_processed: int = 0
    chats_created: int = 0
    chats_skipped: int = 0
    contacts_created: int = 0
    messages_created: int = 0
    messages_skipped: int = 0
    messages_invalid: int = 0
    errors: list[str] = field(default_factory=list)
    errors_dropped: int = 0
    total_chats: int | None = None
    total_messages: int | None = None
    started_at: str = field(default_factory=lambda: utc_now().isoformat())
    finished_at: str | None = None

    def add_error(self, message: str) -> None:
        if len(self.errors) < MAX_ERRORS:
            self.errors.append(message)
        else:
            self.errors_dropped += 1

    @property
    def error_count(self) -> int:
        return len(self.errors) + self.errors_dropped

    def snapshot(self) -> dict[str, Any]:
        return {
            "chatsListed": self.chats_listed,
            "chatsProcessed": self.chats_processed,
            "chatsCreated": self.chats_created,
            "chatsSkipped": self.chats_skipped,
            "contactsCreated": self.contacts_created,
            "messagesCreated": self.messages_created,
            "messagesSkipped": self.messages_skipped,
            "messagesInvalid": self.messages_invalid,
            "errorCount": self.error_count,
            "totalChats": self.total_chats,
            "totalMessages": self.total_messages,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
        }


class SyncFailedError(Exception):
    """Run-level failure; `stats` holds what was done before it."""

    def __init__(self, message: str, stats: SyncStats) -> None:
        super().__init__(message)
        self.stats = stats


class SyncAlreadyRunningError(Exception):
    """A sync for this instance is already in progress."""

    def __init__(self, instance_id: str) -> None:
        super().__init__(f"Sync already running for instance {instance_id}")
        self.instance_id = instance_id


def sync_progress_percent(processed: int, total: int) -> int:
    """Progress while processing chats: 10% at start, capped at 85%."""
    if total <= 0:
        return 85
    return min(85, 10 + round(70 * processed / total))


class BulkSynchronizer:
    def __init__(
        self,
        store: ChatStore,
        provider: Provider,
        cache: GroupMetadataCache,
        publisher: Publisher,
        *,
        state: SyncState | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._provider = provider
        self._cache = cache
        self._publisher = publisher
        self.state = state or LocalSyncState()
        self._sleep = sleep

    # Run state

    def is_running(self, instance_id: str) -> bool:
        return self.state.is_running(instance_id)

    def progress(self, instance_id: str) -> dict[str, Any] | None:
        """Latest progress snapshot for an instance (None if none is recorded)."""
        return self.state.get_progress(instance_id)

    def _publish_progress(
        self, instance_id: str, step: str, percent: int, stats: SyncStats
    ) -> None:
        payload = {
            "instanceId": instance_id,
            "step": step,
            "progressPercent": percent,
            "counters": stats.snapshot(),
            "running": step not in ("completed", "failed"),
            "updatedAt": utc_now().isoformat(),
        }
        self.state.save_progress(instance_id, payload)
        self._publisher.publish(instance_id, "sync_progress", payload)

    # Entry point

    def sync(self, instance_id: str) -> SyncStats:
        """Run a full sync of one instance.

        Raises:
            InstanceNotFoundError: Unknown instance id.
            SyncAlreadyRunningError: A sync of this instance is in progress.
            SyncFailedError: Chats could not be listed (after retries).
        """
        instance = self._store.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)

        if not self.state.try_start(instance_id):
            raise SyncAlreadyRunningError(instance_id)

        try:
            return self._run(instance_id, instance["evolution_instance_name"])
        finally:
            self.state.finish(instance_id)

    def _run(self, instance_id: str, provider_name: str) -> SyncStats:
        stats = SyncStats()
        log_ctx = {"instanceId": instance_id}
        logger.info("sync started", extra={"extra_fields": safe_log_context(**log_ctx)})

        self._publisher.publish(
            instance_id, "sync_start", {"instanceId": instance_id, "startedAt": stats.started_at}
        )
        self._publish_progress(instance_id, "fetching_chats", 0, stats)

        try:
            chat_records = self._list_all_chats(provider_name)
        except Exception as exc:
            stats.add_error(f"list chats: {type(exc).__name__}: {exc}")
            stats.finished_at = utc_now().isoformat()
            logger.error(
                "sync failed: could not list chats",
                extra={
                    "extra_fields": safe_log_context(
                        **log_ctx, error_type=type(exc).__name__
                    )
                },
            )
            self._publish_progress(instance_id, "failed", 0, stats)
            self._publisher.publish(
                instance_id,
                "sync_complete",
                {"ok": False, "error": str(exc), "stats": stats.snapshot()},
            )
            raise SyncFailedError(f"Could not list chats: {exc}", stats) from exc

        chats = self._unique_chats(chat_records, stats)
        stats.chats_listed = len(chats)
        self._publish_progress(instance_id, "processing_chats", 10, stats)

        group_ids = [jid for jid, _ in chats if is_group_id(jid)]
        group_info = self._prefetch_groups(provider_name, group_ids)

        total = len(chats)
        for index, (jid, record) in enumerate(chats):
            try:
                self._sync_chat(instance_id, provider_name, jid, record, group_info, stats)
            except Exception as exc:
                stats.add_error(f"chat {mask_jid(jid)}: {type(exc).__name__}: {exc}")
                logger.warning(
                    "sync: chat failed",
                    extra={
                        "extra_fields": safe_log_context(
                            **log_ctx, chatId=mask_jid(jid), error_type=type(exc).__name__
                        )
                    },
                )
            stats.chats_processed += 1
            self._publish_progress(
                instance_id,
                "processing_chats",
                sync_progress_percent(index + 1, total),
                stats,
            )
            if (index + 1) % CHAT_PAUSE_EVERY == 0:
                self._sleep(CHAT_PAUSE_SECONDS)

        self._publish_progress(instance_id, "finalizing", 95, stats)
        self._finalize(instance_id, stats)

        stats.finished_at = utc_now().isoformat()
        self._publish_progress(instance_id, "completed", 100, stats)
        self._publisher.publish(instance_id, "chats_reload", {"instanceId": instance_id})
        self._publisher.publish(
            instance_id, "sync_complete", {"ok": True, "stats": stats.snapshot()}
        )

        logger.info(
            "sync completed",
            extra={
                "extra_fields": safe_log_context(
                    **log_ctx,
                    chats=stats.chats_processed,
                    messages_created=stats.messages_created,
                    messages_skipped=stats.messages_skipped,
                    errors=stats.error_count,
                )
            },
        )
        return stats

    def _finalize(self, instance_id: str, stats: SyncStats) -> None:
        try:
            stats.total_chats = self._store.count_chats(instance_id)
            stats.total_messages = self._store.count_messages(instance_id)
            self._store.update_instance(instance_id, {"last_seen": utc_now()})
        except Exception as exc:
            stats.add_error(f"finalize: {type(exc).__name__}: {exc}")

    # Chats

    def _list_all_chats(self, provider_name: str) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        seen: set[str] = set()
        for page in range(1, MAX_CHAT_PAGES + 1):
            batch = extract_records(self._provider.list_chats(provider_name, page, CHAT_PAGE_SIZE))
            ids = {first_identifier(r, "remoteJid", "id", "jid") for r in batch}
            # Provider versions without pagination return the same rows again
            if batch and ids <= seen:
                break
            seen |= ids
            records.extend(batch)
            if len(batch) < CHAT_PAGE_SIZE:
                break
        return records

    @staticmethod
    def _unique_chats(
        records: list[dict[str, Any]], stats: SyncStats
    ) -> list[tuple[str, dict[str, Any]]]:
        chats: dict[str, dict[str, Any]] = {}
        for record in records:
            jid = normalize_conversation_id(first_identifier(record, "remoteJid", "id", "jid"))
            if jid is None:
                stats.chats_skipped += 1
                continue
            chats.setdefault(jid, record)
        return list(chats.items())

    def _group_fetcher(self, provider_name: str, group_id: str) -> Callable[[], Any]:
        return lambda: self._provider.get_group_info(provider_name, group_id)

    def _prefetch_groups(
        self, provider_name: str, group_ids: list[str]
    ) -> dict[str, dict[str, Any] | None]:
        results: dict[str, dict[str, Any] | None] = {}
        if not group_ids:
            return results

        with ThreadPoolExecutor(
            max_workers=GROUP_BATCH_SIZE, thread_name_prefix="group-prefetch"
        ) as pool:
            for start in range(0, len(group_ids), GROUP_BATCH_SIZE):
                batch = group_ids[start : start + GROUP_BATCH_SIZE]
                futures = {
                    pool.submit(
                        contextvars.copy_context().run,
                        self._cache.get_group_info,
                        provider_name,
                        group_id,
                        self._group_fetcher(provider_name, group_id),
                    ): group_id
                    for group_id in batch
                }
                wait(futures)
                for future, group_id in futures.items():
                    try:
                        results[group_id] = future.result()
                    except Exception:
                        results[group_id] = None
                if start + GROUP_BATCH_SIZE < len(group_ids):
                    self._sleep(GROUP_BATCH_PAUSE_SECONDS)
        return results

    def _sync_chat(
        self,
        instance_id: str,
        provider_name: str,
        jid: str,
        record: dict[str, Any],
        group_info: dict[str, dict[str, Any] | None],
        stats: SyncStats,
    ) -> None:
        metadata = None
        if is_group_id(jid):
            info = group_info.get(jid)
            if info is None:
                info = self._cache.get_group_info(
                    provider_name, jid, self._group_fetcher(provider_name, jid)
                )
            metadata = group_metadata_from_info(info)

        fields = contact_fields(
            jid,
            name=record.get("name") or None,
            push_name=record.get("pushName") or None,
            profile_pic_url=record.get("profilePicUrl") or None,
            group_metadata=metadata,
        )
        contact, contact_created = ensure_contact(self._store, instance_id, jid, fields)
        if contact_created:
            stats.contacts_created += 1

        chat_fields: dict[str, Any] = {"contact_id": contact["id"]}
        unread = record.get("unreadCount")
        if isinstance(unread, int) and not isinstance(unread, bool):
            chat_fields["unread_count"] = max(0, unread)
        for flag in ("pinned", "archived", "muted"):
            if flag in record:
                chat_fields[flag] = bool(record[flag])

        chat, chat_created = self._store.find_or_create_chat(instance_id, jid, chat_fields)
        if chat_created:
            stats.chats_created += 1
        else:
            changes = {k: v for k, v in chat_fields.items() if chat.get(k) != v}
            if changes:
                self._store.update_chat(instance_id, jid, changes)

        self._sync_messages(instance_id, provider_name, jid, contact["id"], stats)
        summary = refresh_chat_summary(self._store, instance_id, jid)
        if summary is not None:
            last_seen = parse_iso(summary["timestamp"])
            if last_seen is not None and last_seen != parse_iso(contact.get("last_seen")):
                self._store.update_contact(contact["id"], {"last_seen": last_seen})

    # Messages

    def _sync_messages(
        self,
        instance_id: str,
        provider_name: str,
        jid: str,
        contact_id: str,
        stats: SyncStats,
    ) -> None:
        known = self._store.existing_message_ids_for_chat(instance_id, jid)
        seen_this_run: set[str] = set()

        for page in range(1, MAX_MESSAGE_PAGES + 1):
            try:
                records = extract_records(
                    self._provider.list_messages(provider_name, jid, page, MESSAGE_PAGE_SIZE)
                )
            except Exception as exc:
                stats.add_error(
                    f"messages {mask_jid(jid)} page {page}: {type(exc).__name__}: {exc}"
                )
                return

            page_ids: set[str] = set()
            for record in records:
                message = normalize_message_record(record)
                if message is None:
                    stats.messages_invalid += 1
                    continue
                page_ids.add(message.message_id)
                if message.remote_jid != jid:
                    message = dataclasses.replace(message, remote_jid=jid)
                if message.message_id in known:
                    stats.messages_skipped += 1
                    continue
                try:
                    inserted = persist_message(
                        self._store,
                        instance_id,
                        message,
                        contact_id=contact_id,
                        source=MESSAGE_SOURCE,
                    )
                except Exception as exc:
                    stats.add_error(
                        f"message {message.message_id}: {type(exc).__name__}: {exc}"
                    )
                    continue
                known.add(message.message_id)
                if inserted:
                    stats.messages_created += 1
                else:
                    stats.messages_skipped += 1

            if len(records) < MESSAGE_PAGE_SIZE:
                return
            # Same ids as an earlier page: provider is not paginating
            if page_ids and page_ids <= seen_this_run:
                return
            seen_this_run |= page_ids
            self._sleep(MESSAGE_PAGE_PAUSE_SECONDS)
