"""Validation of snapshot history before analysis.

Every analytics function works on a history that is strictly ordered by
capture time. Snapshots that break the ordering, or carry prices outside
``[0, 1]``, are dropped with a warning instead of failing the computation.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from decimal import Decimal
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from polybuddy.storage.repos import SnapshotDTO

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")
_ONE = Decimal("1")


class DataInconsistencyError(Exception):
    """A snapshot that contradicts the rest of its market's history."""

    def __init__(self, message: str, *, snapshot_id: int | None = None) -> None:
        super().__init__(message)
        self.snapshot_id = snapshot_id


def _check_price(snapshot: SnapshotDTO) -> None:
    for name in ("price", "no_price"):
        value = getattr(snapshot, name)
        if value is not None and not (_ZERO <= value <= _ONE):
            raise DataInconsistencyError(
                f"{name} {value} outside [0, 1]", snapshot_id=snapshot.id
            )


def ordered_history(snapshots: Iterable[SnapshotDTO]) -> list[SnapshotDTO]:
    """Return the consistent part of a snapshot history.

    Snapshots are taken in the order given (the storage order). A snapshot
    whose timestamp is not strictly after the last accepted one is
    excluded, as is any snapshot with an invalid price.

    Args:
        snapshots: Snapshots of one market, in storage order.

    Returns:
        Accepted snapshots, strictly increasing in ``snapshot_at``.
    """
    accepted: list[SnapshotDTO] = []
    for snapshot in snapshots:
        try:
            _check_price(snapshot)
            if accepted and snapshot.snapshot_at <= accepted[-1].snapshot_at:
                raise DataInconsistencyError(
                    f"snapshot at {snapshot.snapshot_at.isoformat()} is not after "
                    f"{accepted[-1].snapshot_at.isoformat()}",
                    snapshot_id=snapshot.id,
                )
        except DataInconsistencyError as e:
            logger.warning(
                "Excluding snapshot %s of market %s: %s", e.snapshot_id, snapshot.market_id, e
            )
            continue
        accepted.append(snapshot)
    return accepted
