# classes/tribute_service.py

import logging
import uuid
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlalchemy import delete, select

from classes.base_utils import BaseUtils
from classes.entities import Memorial, Tribute
from classes.errors import FunctionError
from classes.memorial_store import MemorialStore

logger = logging.getLogger("headstone_backend")

TRIBUTE_MAX_CHARS = 2000


class TributeForm(BaseModel):
    model_config = ConfigDict(extra="ignore")

    author_name: str = Field(validation_alias=AliasChoices("authorName", "author_name", "name"))
    message: str = Field(max_length=TRIBUTE_MAX_CHARS)

    @field_validator("author_name", "message")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class TributeService(BaseUtils):
    """
    Guest tributes on memorial pages. A tribute starts pending and only the
    memorial's curator can approve it (it becomes visible) or reject it (it is
    deleted). Tributes live in their own table and never touch the memorial
    record, so they fire no relative-link triggers.
    """

    def __init__(self, store: MemorialStore):
        self.store = store
        self.SessionFactory = store.SessionFactory

    def _require_auth(self, auth_uid: Optional[str]) -> str:
        if not auth_uid:
            raise FunctionError(FunctionError.UNAUTHENTICATED, "You must be logged in.")
        return str(auth_uid)

    def _curated_tribute(self, session, tribute_id: Optional[str], uid: str) -> Tribute:
        tribute = session.get(Tribute, str(tribute_id)) if tribute_id else None
        if tribute is None:
            raise FunctionError(FunctionError.NOT_FOUND, "No tribute found with that ID.")
        memorial = session.get(Memorial, tribute.memorial_id)
        if memorial is None or memorial.curator_id != uid:
            raise FunctionError(
                FunctionError.PERMISSION_DENIED,
                "You do not have permission to moderate this tribute.",
            )
        return tribute

    def submit_tribute(self, auth_uid: Optional[str], memorial_id: Optional[str],
                       data: Dict[str, Any]) -> dict:
        memorial = self.store.get(memorial_id) if memorial_id else None
        if memorial is None:
            raise FunctionError(FunctionError.NOT_FOUND, "No memorial found with that ID.")
        try:
            form = TributeForm.model_validate(data or {})
        except ValidationError as e:
            raise FunctionError(
                FunctionError.INVALID_ARGUMENT,
                "A tribute needs your name and a message.",
                {"errors": e.errors(include_url=False, include_context=False, include_input=False)},
            )

        session = self.SessionFactory()
        try:
            tribute = Tribute(
                id=uuid.uuid4().hex,
                memorial_id=memorial["id"],
                memorial_name=memorial.get("name") or "",
                author_name=form.author_name,
                author_uid=str(auth_uid) if auth_uid else None,
                message=form.message,
                status="pending",
                created_at=self.store.server_timestamp(),
            )
            session.add(tribute)
            session.commit()
            logger.info(f"Tribute {tribute.id} submitted for memorial {tribute.memorial_id}.")
            return tribute.to_dict()
        finally:
            session.close()

    def list_tributes(self, memorial_id: str) -> List[dict]:
        """Approved tributes of one memorial, newest first."""
        session = self.SessionFactory()
        try:
            rows = session.execute(
                select(Tribute)
                .where(Tribute.memorial_id == str(memorial_id), Tribute.status == "approved")
                .order_by(Tribute.created_at.desc(), Tribute.id.asc())
            ).scalars().all()
            return [r.to_dict() for r in rows]
        finally:
            session.close()

    def list_pending_tributes(self, auth_uid: Optional[str]) -> List[dict]:
        """Pending tributes left on the caller's own memorials."""
        uid = self._require_auth(auth_uid)
        session = self.SessionFactory()
        try:
            rows = session.execute(
                select(Tribute)
                .join(Memorial, Memorial.id == Tribute.memorial_id)
                .where(Memorial.curator_id == uid, Tribute.status == "pending")
                .order_by(Tribute.created_at.desc(), Tribute.id.asc())
            ).scalars().all()
            return [r.to_dict() for r in rows]
        finally:
            session.close()

    def approve_tribute(self, auth_uid: Optional[str], tribute_id: Optional[str]) -> dict:
        uid = self._require_auth(auth_uid)
        session = self.SessionFactory()
        try:
            tribute = self._curated_tribute(session, tribute_id, uid)
            tribute.status = "approved"
            session.commit()
            logger.info(f"Tribute {tribute.id} approved by {uid}.")
            return tribute.to_dict()
        finally:
            session.close()

    def reject_tribute(self, auth_uid: Optional[str], tribute_id: Optional[str]) -> dict:
        uid = self._require_auth(auth_uid)
        session = self.SessionFactory()
        try:
            tribute = self._curated_tribute(session, tribute_id, uid)
            session.delete(tribute)
            session.commit()
            logger.info(f"Tribute {tribute_id} rejected by {uid}.")
            return {"success": True}
        finally:
            session.close()

    def delete_for_memorial(self, memorial_id: str) -> int:
        session = self.SessionFactory()
        try:
            result = session.execute(delete(Tribute).where(Tribute.memorial_id == str(memorial_id)))
            session.commit()
            return result.rowcount or 0
        finally:
            session.close()
