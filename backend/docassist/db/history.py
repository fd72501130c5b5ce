"""Chat history ledger - append-only log trimmed to a bounded window."""

from backend.docassist.db.repositories import HistoryEntry, MetadataStore


class HistoryLedger:
    """Per-document ordered chat log holding at most 2 x max_turns entries.

    Trimming is best-effort under concurrency: two racing appends may briefly
    leave a few extra entries, which the next append removes.
    """

    def __init__(self, store: MetadataStore, max_turns: int) -> None:
        self._store = store
        self._max_entries = max_turns * 2

    async def append(self, doc_id: str, role: str, content: str) -> None:
        """Append an entry, then evict the oldest entries beyond the bound."""
        await self._store.append_history(doc_id, role, content)

        count = await self._store.count_history(doc_id)
        if count > self._max_entries:
            await self._store.delete_oldest_history(doc_id, count - self._max_entries)

    async def append_turn(self, doc_id: str, user_message: str, reply: str) -> None:
        """Append a user message and the assistant reply, in that order."""
        await self.append(doc_id, "user", user_message)
        await self.append(doc_id, "assistant", reply)

    async def get_history(self, doc_id: str) -> list[HistoryEntry]:
        """Return all entries for a document in creation order."""
        return await self._store.list_history(doc_id)
