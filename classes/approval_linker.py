# classes/approval_linker.py

import copy
import logging
from typing import Optional

from classes.errors import FunctionError
from classes.google_helpers import APPROVAL_RECIPROCAL_LABELS, STRICT_CURATOR_IDENTITY
from classes.memorial_store import SERVER_TIMESTAMP, ArrayUnion, MemorialStore, Transaction
from classes.reconciler import STAMP_FIELD
from classes.relationships import DEFAULT_RELATIONSHIP, reciprocal_relationship

logger = logging.getLogger("headstone_backend")

APPROVED_STATUS = "approved"


class ApprovalLinker:
    """
    Curator approval of a pending submission, linking it to the memorial it
    claims to be related to (source_memorial_id).

    Both sides of the first link are written in one transaction. The writes
    carry the reconciler stamp so that the two triggers they produce are
    absorbed by echo suppression instead of appending a second reciprocal
    entry on the source.
    """

    def __init__(
        self,
        store: MemorialStore,
        *,
        strict_curator_identity: bool = STRICT_CURATOR_IDENTITY,
        reciprocal_labels: bool = APPROVAL_RECIPROCAL_LABELS,
    ):
        self.store = store
        self.strict_curator_identity = strict_curator_identity
        self.reciprocal_labels = reciprocal_labels

    def approve_and_link(
        self,
        auth_uid: Optional[str],
        submission_id: Optional[str],
        curator_id: Optional[str],
    ) -> dict:
        if not auth_uid:
            raise FunctionError(FunctionError.UNAUTHENTICATED, "You must be logged in.")
        if not submission_id or not curator_id:
            raise FunctionError(FunctionError.INVALID_ARGUMENT, "Missing submissionId or curatorId.")
        if self.strict_curator_identity and str(curator_id) != str(auth_uid):
            raise FunctionError(
                FunctionError.PERMISSION_DENIED,
                "curatorId must match the signed-in curator.",
            )

        submission_id = str(submission_id)
        curator_id = str(curator_id)

        def _approve(txn: Transaction) -> dict:
            submission = txn.get(submission_id)
            if submission is None:
                raise FunctionError(FunctionError.NOT_FOUND, "Submission document does not exist.")

            source_id = submission.get("source_memorial_id")
            source = txn.get(source_id) if source_id else None

            submission_update = {"status": APPROVED_STATUS, "curator_id": curator_id}

            if source is not None:
                txn.update(source_id, self._source_update(submission_id, submission, source))
                submission_update["relatives"] = [self._reverse_link(submission, source, source_id)]
                submission_update[STAMP_FIELD] = SERVER_TIMESTAMP
            elif source_id:
                logger.info(f"Source memorial {source_id} of submission {submission_id} is gone; approving unlinked.")

            txn.update(submission_id, submission_update)
            return {"success": True}

        result = self.store.run_transaction(_approve)
        logger.info(f"Submission {submission_id} approved by {curator_id}.")
        return result

    def _source_update(self, submission_id: str, submission: dict, source: dict) -> dict:
        name = submission.get("name")
        relationship = submission.get("relationship_to_source")
        relatives = copy.deepcopy(source.get("relatives") or [])

        for rel in relatives:
            if isinstance(rel, dict) and rel.get("name") == name and not rel.get("memorial_id"):
                rel["memorial_id"] = submission_id
                if relationship:
                    rel["relationship"] = relationship
                return {"relatives": relatives, STAMP_FIELD: SERVER_TIMESTAMP}

        new_relative = {
            "name": name,
            "relationship": relationship or DEFAULT_RELATIONSHIP,
            "memorial_id": submission_id,
        }
        return {"relatives": ArrayUnion(new_relative), STAMP_FIELD: SERVER_TIMESTAMP}

    def _reverse_link(self, submission: dict, source: dict, source_id: str) -> dict:
        if self.reciprocal_labels:
            relationship = reciprocal_relationship(submission.get("relationship_to_source"))
        else:
            relationship = DEFAULT_RELATIONSHIP
        return {
            "name": source.get("name"),
            "relationship": relationship,
            "memorial_id": source_id,
        }
