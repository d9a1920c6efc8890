# classes/reconciler.py

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from classes.entities import as_utc
from classes.google_helpers import ECHO_SUPPRESSION_SECONDS
from classes.memorial_store import SERVER_TIMESTAMP, ArrayUnion, MemorialStore
from classes.relationships import reciprocal_relationship

logger = logging.getLogger("headstone_backend")

STAMP_FIELD = "last_updated_by_function"


@dataclass
class ReconcileResult:
    memorial_id: str
    suppressed: bool = False
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    writes: int = 0


def linked_relatives(snapshot: Optional[Dict[str, Any]]) -> Dict[str, dict]:
    """
    memorial_id -> relative link, for the links that point at another record.
    Unlinked placeholders are left out. On duplicate ids the last entry wins.
    """
    links: Dict[str, dict] = {}
    for rel in (snapshot or {}).get("relatives") or []:
        if not isinstance(rel, dict):
            continue
        target = rel.get("memorial_id")
        if target:
            links[str(target)] = rel
    return links


class LinkageReconciler:
    """
    Keeps relative links symmetric across memorial records.

    Invoked with the before/after snapshots of one memorial whenever it is
    written. Newly linked relatives get a reciprocal entry appended on their
    own record; unlinked ones get every entry pointing back at the subject
    dropped. All reciprocal writes for one trigger go out in one batch and are
    stamped with `last_updated_by_function`, which is how the reconciler
    recognises (and ignores) the triggers its own writes produce.

    Errors are not caught here: the trigger worker owns redelivery.
    """

    def __init__(
        self,
        store: MemorialStore,
        *,
        suppression_window_seconds: float = ECHO_SUPPRESSION_SECONDS,
    ):
        self.store = store
        self.suppression_window_seconds = suppression_window_seconds

    def is_echo(self, snapshot: Optional[Dict[str, Any]]) -> bool:
        stamp = (snapshot or {}).get(STAMP_FIELD)
        if not stamp:
            return False
        if not isinstance(stamp, datetime):
            stamp = datetime.fromisoformat(str(stamp))
        age = (self.store.server_timestamp() - as_utc(stamp)).total_seconds()
        return age < self.suppression_window_seconds

    def handle_change(
        self,
        memorial_id: str,
        before: Optional[Dict[str, Any]],
        after: Optional[Dict[str, Any]],
    ) -> ReconcileResult:
        memorial_id = str(memorial_id)
        result = ReconcileResult(memorial_id=memorial_id)

        if after is None:
            # deletions go through handle_delete
            return result

        if self.is_echo(after):
            logger.info(f"Skipping reconcile for {memorial_id}: recent reciprocal write.")
            result.suppressed = True
            return result

        old_links = linked_relatives(before)
        new_links = linked_relatives(after)
        batch = self.store.batch()

        for relative_id, link in new_links.items():
            if relative_id in old_links or relative_id == memorial_id:
                continue
            reciprocal_link = {
                "name": after.get("name") or "",
                "relationship": reciprocal_relationship(link.get("relationship")),
                "memorial_id": memorial_id,
            }
            batch.update(relative_id, {
                "relatives": ArrayUnion(reciprocal_link),
                STAMP_FIELD: SERVER_TIMESTAMP,
            })
            result.added.append(relative_id)

        for relative_id in old_links:
            if relative_id in new_links or relative_id == memorial_id:
                continue
            if self._queue_unlink(batch, memorial_id, relative_id):
                result.removed.append(relative_id)

        result.writes = batch.commit()
        if result.writes:
            logger.info(
                f"Reconciled {memorial_id}: added={result.added} removed={result.removed} "
                f"writes={result.writes}"
            )
        return result

    def handle_delete(self, memorial_id: str, before: Optional[Dict[str, Any]]) -> ReconcileResult:
        """
        Treat a deleted record as if all of its links had been removed.
        No echo check: a deleted record cannot be the target of our own writes.
        """
        memorial_id = str(memorial_id)
        result = ReconcileResult(memorial_id=memorial_id)
        batch = self.store.batch()

        for relative_id in linked_relatives(before):
            if relative_id == memorial_id:
                continue
            if self._queue_unlink(batch, memorial_id, relative_id):
                result.removed.append(relative_id)

        result.writes = batch.commit()
        if result.writes:
            logger.info(f"Cleaned up links to deleted memorial {memorial_id}: {result.removed}")
        return result

    def _queue_unlink(self, batch, memorial_id: str, relative_id: str) -> bool:
        counterpart = self.store.get(relative_id)
        if counterpart is None:
            logger.info(f"Counterpart {relative_id} of {memorial_id} no longer exists; nothing to unlink.")
            return False

        # keyed by the subject id; the counterpart's copy may have been hand-edited
        remaining = [
            rel for rel in (counterpart.get("relatives") or [])
            if not (isinstance(rel, dict) and rel.get("memorial_id") == memorial_id)
        ]
        batch.update(relative_id, {
            "relatives": remaining,
            STAMP_FIELD: SERVER_TIMESTAMP,
        })
        return True
