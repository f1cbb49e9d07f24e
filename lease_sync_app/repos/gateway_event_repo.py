import uuid

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models.models import ProcessedGatewayEvent


class GatewayEventRepo:
    def __init__(self, db):
        self.db = db

    async def claim(self, key: str, payment_id: uuid.UUID) -> bool:
        """Record ``key`` as applied; False when another delivery already holds it."""
        self.db.add(ProcessedGatewayEvent(key=key, payment_id=payment_id))
        try:
            await self.db.commit()
            return True
        except IntegrityError:
            await self.db.rollback()
            return False

    async def release(self, key: str) -> None:
        try:
            await self.db.execute(
                delete(ProcessedGatewayEvent).where(ProcessedGatewayEvent.key == key)
            )
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise
