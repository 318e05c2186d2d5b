"""Non-destructive merges into a transaction's protected data.

Every write to the platform-owned extensible-data blob goes through
``ProtectedDataReconciler.merge_protected_fields``: read the current blob,
deep-merge the patch into it, write back guarded by the version that was
read. A version mismatch is retried a bounded number of times; exhausting
the retries is reported, never raised.

An optional ``guard`` sees the freshly read blob on every attempt and may
narrow the patch, so fields that depend on the stored state are re-checked
against the version actually being written.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from fastapi_rentalship.exceptions import (
    TransactionNotFoundError,
    WriteConflictError,
)
from fastapi_rentalship.protocols import TransactionStore
from fastapi_rentalship.types import TransactionRecord

logger = logging.getLogger(__name__)

PatchGuard = Callable[
    [Mapping[str, Any], Mapping[str, Any]], Mapping[str, Any]
]


def deep_merge(
    base: Mapping[str, Any], patch: Mapping[str, Any]
) -> dict[str, Any]:
    """Recursively merge ``patch`` into a copy of ``base``.

    Nested mappings merge key by key; any other value (lists included)
    replaces the existing one. Neither argument is mutated.
    """
    merged = copy.deepcopy(dict(base))
    for key, value in patch.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


@dataclass
class MergeResult:
    success: bool
    attempts: int
    error: str | None = None
    record: TransactionRecord | None = None


class ProtectedDataReconciler:
    """Read-merge-write with optimistic concurrency and fixed backoff."""

    def __init__(
        self,
        store: TransactionStore,
        *,
        retries: int = 3,
        backoff_ms: int = 250,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.retries = retries
        self.backoff_ms = backoff_ms
        self._sleep = sleep

    async def merge_protected_fields(
        self,
        transaction_id: str,
        patch: Mapping[str, Any],
        *,
        retries: int | None = None,
        backoff_ms: int | None = None,
        source: str | None = None,
        guard: PatchGuard | None = None,
    ) -> MergeResult:
        max_retries = self.retries if retries is None else retries
        backoff = self.backoff_ms if backoff_ms is None else backoff_ms
        label = source or "merge"
        attempts = 0

        while True:
            attempts += 1
            try:
                current = await self.store.get(transaction_id)
                effective = (
                    patch
                    if guard is None
                    else guard(current.protected_data, patch)
                )
                merged = deep_merge(current.protected_data, effective)
                record = await self.store.update_protected_data(
                    transaction_id,
                    merged,
                    expected_version=current.version,
                )
            except WriteConflictError as exc:
                if attempts > max_retries:
                    logger.error(
                        "[%s] Giving up on tx %s after %d attempts: %s",
                        label,
                        transaction_id,
                        attempts,
                        exc,
                    )
                    return MergeResult(
                        success=False, attempts=attempts, error=str(exc)
                    )
                logger.warning(
                    "[%s] Write conflict on tx %s (attempt %d/%d), retrying "
                    "in %dms",
                    label,
                    transaction_id,
                    attempts,
                    max_retries + 1,
                    backoff,
                )
                await self._sleep(backoff / 1000)
                continue
            except TransactionNotFoundError as exc:
                logger.error(
                    "[%s] Cannot merge into missing tx %s",
                    label,
                    transaction_id,
                )
                return MergeResult(
                    success=False, attempts=attempts, error=str(exc)
                )
            except Exception as exc:
                logger.exception(
                    "[%s] Merge into tx %s failed: %s",
                    label,
                    transaction_id,
                    exc,
                )
                return MergeResult(
                    success=False, attempts=attempts, error=str(exc)
                )

            logger.info(
                "[%s] Persisted keys %s on tx %s (attempt %d)",
                label,
                sorted(patch),
                transaction_id,
                attempts,
            )
            return MergeResult(success=True, attempts=attempts, record=record)
