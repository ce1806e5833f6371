"""
Embedding batcher - turns message text into unit-length vectors.

Texts are tokenized, sorted longest first and packed into batches whose
padded size (rows x seq_len) never exceeds the token budget. Each row is
left-padded, the hidden state of its last real token is taken as the
embedding and the result is L2-normalized, so inner product equals cosine
similarity.
"""
from typing import List, Optional, Sequence, Tuple
import logging

import numpy as np

from mailmirror.core.email.html_sanitizer import html_to_text
from mailmirror.core.email.text_cleaner import clean_text_or_empty
from .runtime import EmbeddingRuntime, EmbeddingUnavailableError

logger = logging.getLogger(__name__)

MAX_SEQ_LEN = 1024
TOKEN_BUDGET = 16384
NORM_EPSILON = 1e-12

QUERY_INSTRUCTION = (
    "Instruct: Given a mailbox and a search query, find emails whose subject or body "
    "are most relevant to the topic of the query, even if they don't explicitly answer "
    "a question.\nQuery:{query}"
)


def build_embedding_text(message, body) -> str:
    """
    Text embedded for a message: subject line, then the plain text body
    (or the text of the HTML body when there is no plain part).

    Args:
        message: Object with a `subject` attribute (ImapMessage)
        body: Object with plain_text / sanitized_html / html_text (MessageBody), or None
    """
    subject = (message.subject or "").strip() or "(no subject)"
    content = ""
    if body is not None:
        if body.plain_text and body.plain_text.strip():
            content = body.plain_text
        else:
            content = html_to_text(body.sanitized_html or body.html_text)

    text = subject
    if content and content.strip():
        text = f"{subject}\n{content}"
    return clean_text_or_empty(text.strip())


def plan_batches(token_lists: Sequence[Sequence[int]], max_len: int = MAX_SEQ_LEN,
                 budget: int = TOKEN_BUDGET) -> List[Tuple[List[int], int]]:
    """
    Group texts into batches, longest first.

    Args:
        token_lists: Token ids per text
        max_len: Maximum sequence length (longer texts are truncated)
        budget: Upper bound for rows x seq_len of every batch

    Returns:
        List of (original indices, seq_len) per batch
    """
    if max_len > budget:
        raise ValueError(f"max_len ({max_len}) must not exceed the token budget ({budget})")

    def length(i: int) -> int:
        return min(max_len, max(1, len(token_lists[i])))

    order = sorted(range(len(token_lists)), key=lambda i: len(token_lists[i]), reverse=True)
    batches: List[Tuple[List[int], int]] = []
    pos = 0
    while pos < len(order):
        remaining = len(order) - pos
        seq_len = length(order[pos])
        count = min(max(1, budget // seq_len), remaining)
        # Longest-first order makes the head of the slice its longest row
        seq_len = max(length(i) for i in order[pos:pos + count])
        count = max(1, min(count, budget // seq_len))
        batches.append((order[pos:pos + count], seq_len))
        pos += count
    return batches


def pad_left(token_lists: Sequence[Sequence[int]], seq_len: int,
             pad_id: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Keep the first seq_len tokens of each row and left-pad to seq_len.

    Returns:
        (input_ids, attention_mask), both int64 [rows, seq_len]
    """
    input_ids = np.full((len(token_lists), seq_len), pad_id, dtype=np.int64)
    mask = np.zeros((len(token_lists), seq_len), dtype=np.int64)
    for row, tokens in enumerate(token_lists):
        kept = list(tokens[:seq_len])
        if not kept:
            continue
        input_ids[row, seq_len - len(kept):] = kept
        mask[row, seq_len - len(kept):] = 1
    return input_ids, mask


def pool_last_token(hidden: np.ndarray, mask: np.ndarray) -> np.ndarray:
    """
    Hidden state at the last attended position of each row, L2-normalized.

    Rows with no attended position use index 0.
    """
    rows, seq_len = mask.shape
    last = np.zeros(rows, dtype=np.int64)
    for row in range(rows):
        attended = np.nonzero(mask[row])[0]
        if attended.size:
            last[row] = attended[-1]
    pooled = hidden[np.arange(rows), last].astype(np.float32)
    norms = np.sqrt(np.sum(pooled * pooled, axis=1, keepdims=True) + NORM_EPSILON)
    return pooled / norms


class EmbeddingBatcher:
    """
    Generate embeddings for message texts and search queries.

    Tokenization, batching and pooling happen here; the runtime only runs
    forward passes. Callers run this in a worker thread.
    """

    def __init__(self, runtime: EmbeddingRuntime, max_seq_len: int = MAX_SEQ_LEN,
                 token_budget: int = TOKEN_BUDGET):
        """
        Args:
            runtime: Inference runtime (tokenizer + model)
            max_seq_len: Per-text token limit
            token_budget: Upper bound for rows x seq_len of one forward pass
        """
        if max_seq_len > token_budget:
            raise ValueError("max_seq_len must not exceed token_budget")
        self.runtime = runtime
        self.max_seq_len = max_seq_len
        self.token_budget = token_budget

    @property
    def model_version(self) -> str:
        return self.runtime.model_version

    @property
    def dimension(self) -> int:
        return self.runtime.dimension

    def embed_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        """
        Embed many texts.

        Args:
            texts: Texts to embed

        Returns:
            One unit-length float32 vector per text, in input order

        Raises:
            EmbeddingUnavailableError: Runtime could not be loaded or run
        """
        if not texts:
            return []

        token_lists = [self.runtime.tokenize(text or "") for text in texts]
        pad_id = self.runtime.pad_token_id
        results: List[Optional[np.ndarray]] = [None] * len(texts)

        for indices, seq_len in plan_batches(token_lists, self.max_seq_len, self.token_budget):
            input_ids, mask = pad_left([token_lists[i] for i in indices], seq_len, pad_id)
            hidden = self.runtime.forward(input_ids, mask)
            if hidden.ndim != 3 or hidden.shape[0] != len(indices) or hidden.shape[2] != self.dimension:
                raise EmbeddingUnavailableError(
                    f"Unexpected hidden state shape {hidden.shape} for batch {len(indices)}x{seq_len}"
                )
            for i, vector in zip(indices, pool_last_token(hidden, mask)):
                results[i] = vector

        logger.debug(f"Embedded {len(texts)} text(s)")
        return results

    def embed_query(self, query: str) -> np.ndarray:
        """Embed a search query, wrapped in the retrieval instruction."""
        return self.embed_batch([QUERY_INSTRUCTION.format(query=query)])[0]
