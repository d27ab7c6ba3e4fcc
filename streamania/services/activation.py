"""
At most one active record per collection.

``set_active`` runs inside one transaction: it locks the target row, clears
every other active row with a single bulk UPDATE, flags the target, and
commits once. Readers see the old active record or the new one, never zero
or two.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Generic, List, Optional, Type, TypeVar

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.errors import NotFound, RemoteWriteFailed
from ..core.events import EventHub

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")


class ActivationRegistry(Generic[ModelT]):
    def __init__(
        self,
        db: Session,
        model: Type[ModelT],
        topic: str,
        hub: Optional[EventHub] = None,
        serialize: Optional[Callable[[ModelT], Dict[str, Any]]] = None,
        label: str = "item",
    ) -> None:
        self.db = db
        self.model = model
        self.topic = topic
        self.hub = hub
        self.serialize = serialize
        self.label = label

    def _commit(self, action: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Error while trying to %s %s", action, self.label)
            raise RemoteWriteFailed(f"Failed to {action} {self.label}") from exc

    def _notify(self) -> None:
        if self.hub is None:
            return
        active = self.get_active()
        payload = None
        if active is not None:
            payload = self.serialize(active) if self.serialize else {"id": active.id}
        self.hub.publish(self.topic, {"active": payload})

    def create(self, item: ModelT) -> ModelT:
        item.is_active = False
        self.db.add(item)
        self._commit("create")
        self.db.refresh(item)
        self._notify()
        return item

    def list_all(self) -> List[ModelT]:
        return self.db.query(self.model).order_by(self.model.created_at.desc()).all()

    def get(self, item_id: str) -> ModelT:
        item = self.db.query(self.model).filter(self.model.id == item_id).first()
        if item is None:
            raise NotFound(f"{self.label.capitalize()} not found")
        return item

    def get_active(self) -> Optional[ModelT]:
        return (
            self.db.query(self.model)
            .filter(self.model.is_active.is_(True))
            .order_by(self.model.created_at.desc())
            .first()
        )

    def set_active(self, item_id: str, **values: Any) -> ModelT:
        """Activate one record; extra ``values`` are written to it in the same UPDATE."""
        model = self.model
        try:
            target = (
                self.db.query(model).filter(model.id == item_id).with_for_update().first()
            )
            if target is None:
                self.db.rollback()
                raise NotFound(f"{self.label.capitalize()} not found")
            self.db.execute(
                update(model)
                .where(model.is_active.is_(True), model.id != item_id)
                .values(is_active=False)
                .execution_options(synchronize_session="fetch")
            )
            self.db.execute(
                update(model)
                .where(model.id == item_id)
                .values(is_active=True, **values)
                .execution_options(synchronize_session="fetch")
            )
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Error setting active %s", self.label)
            raise RemoteWriteFailed(f"Failed to activate {self.label}") from exc
        self._commit("activate")
        self.db.refresh(target)
        logger.info("Activated %s %s", self.label, item_id)
        self._notify()
        return target

    def deactivate(self, item_id: str) -> ModelT:
        item = self.get(item_id)
        item.is_active = False
        self._commit("deactivate")
        self.db.refresh(item)
        self._notify()
        return item

    def update(self, item: ModelT) -> ModelT:
        self._commit("update")
        self.db.refresh(item)
        if getattr(item, "is_active", False):
            self._notify()
        return item

    def delete(self, item_id: str) -> None:
        item = self.get(item_id)
        was_active = bool(item.is_active)
        self.db.delete(item)
        self._commit("delete")
        if was_active:
            self._notify()
