# analyst_core/transcript_cache.py
import time
import threading
from typing import Dict, Iterable, List, Mapping

from langchain_community.chat_message_histories.in_memory import ChatMessageHistory
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage


class TranscriptCache:
    """
    In-memory, per-project conversation transcript with:
    - sliding TTL (expires ttl_seconds after last touch)
    - approximate token cap (chars/4 heuristic), pruned from the oldest message
    - thread-safe operations
    """

    def __init__(self, ttl_seconds: int, max_tokens: int):
        self.ttl_seconds = ttl_seconds
        self.max_tokens = max_tokens
        self._lock = threading.Lock()
        # project_id -> {"history": ChatMessageHistory, "expires_at": float}
        self._items: Dict[str, Dict[str, object]] = {}

    def _approx_tokens(self, text: str) -> int:
        return max(1, len(text) // 4)

    def _get_or_create_unlocked(self, project_id: str) -> ChatMessageHistory:
        now = time.time()
        item = self._items.get(project_id)

        if item is not None:
            if float(item["expires_at"]) > now:
                item["expires_at"] = now + self.ttl_seconds
                return item["history"]  # type: ignore[return-value]
            # expired -> replace
            del self._items[project_id]

        history = ChatMessageHistory()
        self._items[project_id] = {"history": history, "expires_at": now + self.ttl_seconds}
        return history

    def snapshot(self, project_id: str) -> List[BaseMessage]:
        """
        Returns a COPY of the current message list, pruned to the cap.
        """
        with self._lock:
            history = self._get_or_create_unlocked(str(project_id))
            self._prune_to_token_cap_unlocked(history)
            return list(history.messages)

    def append_user(self, project_id: str, text: str) -> None:
        with self._lock:
            history = self._get_or_create_unlocked(str(project_id))
            history.add_message(HumanMessage(content=text))
            self._prune_to_token_cap_unlocked(history)

    def append_assistant(self, project_id: str, text: str) -> None:
        with self._lock:
            history = self._get_or_create_unlocked(str(project_id))
            history.add_message(AIMessage(content=text))
            self._prune_to_token_cap_unlocked(history)

    def append_turn(self, project_id: str, user_text: str, assistant_text: str) -> None:
        with self._lock:
            history = self._get_or_create_unlocked(str(project_id))
            history.add_message(HumanMessage(content=user_text))
            history.add_message(AIMessage(content=assistant_text))
            self._prune_to_token_cap_unlocked(history)

    def load(self, project_id: str, messages: Iterable[Mapping[str, str]]) -> int:
        """
        Replace the transcript with prior history given as {"role", "content"} dicts
        (roles: user / assistant / system). Returns how many messages were loaded.
        """
        converted: List[BaseMessage] = []
        for m in messages:
            role = (m.get("role") or "").lower()
            content = str(m.get("content") or "")
            if role == "user":
                converted.append(HumanMessage(content=content))
            elif role == "assistant":
                converted.append(AIMessage(content=content))
            elif role == "system":
                converted.append(SystemMessage(content=content))

        with self._lock:
            history = self._get_or_create_unlocked(str(project_id))
            history.clear()
            history.add_messages(converted)
            self._prune_to_token_cap_unlocked(history)
            return len(history.messages)

    def _prune_to_token_cap_unlocked(self, history: ChatMessageHistory) -> None:
        msgs = list(history.messages)

        tokens = []
        total = 0
        for m in msgs:
            t = self._approx_tokens(str(getattr(m, "content", "") or ""))
            tokens.append(t)
            total += t

        if total <= self.max_tokens:
            return

        # drop from front until under cap
        i = 0
        while i < len(msgs) and total > self.max_tokens:
            total -= tokens[i]
            i += 1

        history.messages = msgs[i:]

    def sweep_expired(self) -> int:
        """
        Delete expired transcripts. Returns how many entries were removed.
        """
        now = time.time()
        removed = 0
        with self._lock:
            expired = [k for k, v in self._items.items() if float(v["expires_at"]) <= now]
            for k in expired:
                del self._items[k]
                removed += 1
        return removed


def message_role(message: BaseMessage) -> str:
    if isinstance(message, HumanMessage):
        return "user"
    if isinstance(message, AIMessage):
        return "assistant"
    return "system"
