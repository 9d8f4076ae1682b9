"""
RAPTOR summary forest.

Leaves summarize fixed windows of messages. Upper levels cluster the
parentless nodes of a level by embedding and summarize each cluster into a
parent. Clusters are turned into contiguous seq runs before parents are
built, so every parent covers exactly the union of its children's ranges.

Node ids are deterministic: leaves from (thread, level 0, start..end),
parents from the sorted child id list. Re-running the builder over the same
messages reuses existing nodes and their summaries.
"""

import logging
import math
import uuid
from dataclasses import dataclass, field
from typing import Sequence

from sqlalchemy.orm import Session

from tutorchat.chat.prompts import SCHEMA_SUMMARIZE_NODE, SUMMARIZE_NODE_SCHEMA, summarize_node_prompt
from tutorchat.config import settings
from tutorchat.db.repositories import SummaryRepository
from tutorchat.exceptions import ChatEngineError
from tutorchat.llm.base import LLMClient
from tutorchat.models.db import ChatDoc, ChatMessage, ChatSummaryNode, ChatThread, DocScope, DocType
from tutorchat.utils.hashing import deterministic_uuid
from tutorchat.utils.timeutil import utcnow
from tutorchat.vector.memory import cosine_similarity

logger = logging.getLogger(__name__)

CHAT_SUMMARY_VERSION = 1

MAX_LEVELS = 12
KMEANS_MAX_ITERS = 10
LEAF_MESSAGE_CHARS = 1200
SUMMARY_UNAVAILABLE = "- (summary unavailable)"


@dataclass
class RaptorResult:
    leaves: int = 0
    parents: int = 0
    summarized: int = 0
    docs: list[ChatDoc] = field(default_factory=list)


def leaf_node_id(thread_id: uuid.UUID, start_seq: int, end_seq: int) -> uuid.UUID:
    return deterministic_uuid(
        f"chat_summary_node|v{CHAT_SUMMARY_VERSION}|thread:{thread_id}|level:0|{start_seq}-{end_seq}"
    )


def parent_node_id(thread_id: uuid.UUID, level: int, child_ids: Sequence[uuid.UUID]) -> uuid.UUID:
    children = ",".join(sorted(str(c) for c in child_ids))
    return deterministic_uuid(
        f"chat_summary_node|v{CHAT_SUMMARY_VERSION}|thread:{thread_id}|level:{level}|children:{children}"
    )


def summary_doc_id(node_id: uuid.UUID) -> uuid.UUID:
    return deterministic_uuid(f"chat_doc|summary|{node_id}")


def format_window(messages: Sequence[ChatMessage], max_chars: int = LEAF_MESSAGE_CHARS) -> str:
    """Render messages as "[seq] role: content" lines, clamping long bodies."""
    lines = []
    for message in messages:
        content = (message.content or "").strip()
        if not content:
            continue
        if max_chars > 0 and len(content) > max_chars:
            content = content[:max_chars].rstrip() + "…"
        lines.append(f"[{message.seq}] {message.role}: {content}")
    return "\n".join(lines)


# =============================================================================
# Clustering
# =============================================================================


def kmeans_cosine(
    vectors: Sequence[Sequence[float]], k: int, max_iters: int = KMEANS_MAX_ITERS
) -> list[int]:
    """
    Cluster vectors by cosine similarity.

    Initial centroids are taken at evenly spaced indices, so the result is
    deterministic for a given input order.

    Returns:
        Cluster label per input vector
    """
    n = len(vectors)
    if n == 0:
        return []
    k = max(1, min(k, n))
    if k == 1:
        return [0] * n

    centroids = [list(vectors[i * n // k]) for i in range(k)]
    labels = [-1] * n
    for _ in range(max_iters):
        changed = False
        for i, vec in enumerate(vectors):
            best = max(range(k), key=lambda c: cosine_similarity(list(vec), centroids[c]))
            if best != labels[i]:
                labels[i] = best
                changed = True
        if not changed:
            break
        for c in range(k):
            members = [vectors[i] for i in range(n) if labels[i] == c]
            if not members:
                continue
            dim = len(members[0])
            centroids[c] = [sum(m[d] for m in members) / len(members) for d in range(dim)]
    return labels


def contiguous_runs(labels: Sequence[int], k: int) -> list[list[int]]:
    """
    Turn cluster labels over seq-ordered nodes into at most k contiguous runs.

    Adjacent nodes with the same label form a run. While there are more than
    k runs, the smallest run (first on ties) merges into its smaller
    neighbour (left on ties).

    Returns:
        Runs of node indices, in order
    """
    runs: list[list[int]] = []
    for i, label in enumerate(labels):
        if runs and labels[runs[-1][-1]] == label:
            runs[-1].append(i)
        else:
            runs.append([i])

    k = max(1, k)
    while len(runs) > k:
        smallest = min(range(len(runs)), key=lambda r: (len(runs[r]), r))
        if smallest == 0:
            target = 1
        elif smallest == len(runs) - 1:
            target = smallest - 1
        elif len(runs[smallest + 1]) < len(runs[smallest - 1]):
            target = smallest + 1
        else:
            target = smallest - 1
        lo, hi = sorted((smallest, target))
        runs[lo:hi + 1] = [runs[lo] + runs[hi]]
    return runs


# =============================================================================
# Forest builder
# =============================================================================


class RaptorBuilder:
    """Builds and extends the summary forest of one thread."""

    def __init__(self, session: Session, llm: LLMClient, thread: ChatThread):
        self.session = session
        self.llm = llm
        self.thread = thread
        self.summaries = SummaryRepository(session)
        self.window = max(1, settings.chat_raptor_window)
        self.branching = max(2, settings.chat_raptor_branching)

    def build(self, messages: Sequence[ChatMessage]) -> RaptorResult:
        """
        Add leaves for the messages, then grow upper levels until a level
        has at most one orphan.

        Summary docs for every touched node are returned unembedded; the
        caller embeds and stores them.
        """
        result = RaptorResult()
        ordered = sorted(messages, key=lambda m: m.seq)
        for start in range(0, len(ordered), self.window):
            window = ordered[start:start + self.window]
            if window:
                self._leaf(window, result)
        self._grow(result)
        return result

    def _summarize(self, level: int, children: str) -> str:
        system, user = summarize_node_prompt(level, children)
        try:
            obj = self.llm.generate_json(system, user, SCHEMA_SUMMARIZE_NODE, SUMMARIZE_NODE_SCHEMA)
        except ChatEngineError as e:
            logger.warning(f"Summary generation failed for thread {self.thread.id} level {level}: {e}")
            return SUMMARY_UNAVAILABLE
        summary = str(obj.get("summary_md") or "").strip()
        return summary or SUMMARY_UNAVAILABLE

    def _leaf(self, window: Sequence[ChatMessage], result: RaptorResult) -> ChatSummaryNode:
        start_seq, end_seq = window[0].seq, window[-1].seq
        node_id = leaf_node_id(self.thread.id, start_seq, end_seq)
        node = self.summaries.get(node_id)
        if node is None or not (node.summary_md or "").strip():
            summary = self._summarize(0, format_window(window))
            result.summarized += 1
            if node is None:
                node = self.summaries.create_ignore(
                    ChatSummaryNode(
                        id=node_id,
                        thread_id=self.thread.id,
                        parent_id=None,
                        level=0,
                        start_seq=start_seq,
                        end_seq=end_seq,
                        summary_md=summary,
                        child_node_ids=[],
                    )
                )
            else:
                node.summary_md = summary
            result.leaves += 1
        result.docs.append(self._doc(node, f"RAPTOR leaf summary:\n{node.summary_md}"))
        return node

    def _grow(self, result: RaptorResult) -> None:
        for level in range(MAX_LEVELS):
            orphans = self.summaries.list_orphans_by_level(self.thread.id, level)
            if len(orphans) <= 1:
                break
            k = math.ceil(len(orphans) / self.branching)
            for run in contiguous_runs(self._cluster(orphans, k), k):
                self._parent(level + 1, [orphans[i] for i in run], result)

    def _cluster(self, orphans: Sequence[ChatSummaryNode], k: int) -> list[int]:
        """Labels per orphan; falls back to sequential groups when embedding fails."""
        try:
            vectors = self.llm.embed([(o.summary_md or "").strip() or " " for o in orphans])
        except ChatEngineError as e:
            logger.warning(f"Summary embedding failed for thread {self.thread.id}: {e}")
            vectors = []
        if len(vectors) != len(orphans) or any(not v for v in vectors):
            size = math.ceil(len(orphans) / k)
            return [i // size for i in range(len(orphans))]
        return kmeans_cosine(vectors, k)

    def _parent(
        self, level: int, children: list[ChatSummaryNode], result: RaptorResult
    ) -> ChatSummaryNode:
        children = sorted(children, key=lambda c: c.start_seq)
        child_ids = [c.id for c in children]
        node_id = parent_node_id(self.thread.id, level, child_ids)
        node = self.summaries.get(node_id)
        if node is None or not (node.summary_md or "").strip():
            text = "\n".join(
                f"- [{c.id}] (seq {c.start_seq}-{c.end_seq})\n{(c.summary_md or '').strip()}"
                for c in children
            )
            summary = self._summarize(level, text)
            result.summarized += 1
        else:
            summary = node.summary_md

        # Parent row and child rebinding commit together
        with self.session.begin_nested():
            if node is None:
                node = self.summaries.create_ignore(
                    ChatSummaryNode(
                        id=node_id,
                        thread_id=self.thread.id,
                        parent_id=None,
                        level=level,
                        start_seq=min(c.start_seq for c in children),
                        end_seq=max(c.end_seq for c in children),
                        summary_md=summary,
                        child_node_ids=[str(c) for c in child_ids],
                    )
                )
                result.parents += 1
            else:
                node.summary_md = summary
            self.summaries.set_parent(child_ids, node.id)

        result.docs.append(self._doc(node, f"RAPTOR summary level {level}:\n{node.summary_md}"))
        return node

    def _doc(self, node: ChatSummaryNode, contextual: str) -> ChatDoc:
        doc_id = summary_doc_id(node.id)
        now = utcnow()
        return ChatDoc(
            id=doc_id,
            user_id=self.thread.user_id,
            doc_type=DocType.SUMMARY.value,
            scope=DocScope.THREAD.value,
            scope_id=self.thread.id,
            thread_id=self.thread.id,
            path_id=self.thread.path_id,
            job_id=None,
            source_id=node.id,
            source_seq=node.end_seq,
            chunk_index=0,
            text=node.summary_md,
            contextual_text=contextual,
            embedding=[],
            vector_id=str(doc_id),
            created_at=now,
            updated_at=now,
        )


def summarize_thread(
    session: Session,
    llm: LLMClient,
    thread: ChatThread,
    messages: Sequence[ChatMessage],
) -> RaptorResult:
    """Extend a thread's forest with new messages."""
    return RaptorBuilder(session, llm, thread).build(messages)
