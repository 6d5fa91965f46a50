"""Idempotency-Key handling for payment initiation."""

import hashlib
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import ProblemDetailsException
from ..models.idempotency import IdempotencyRecord

logger = logging.getLogger(__name__)


class IdempotencyMismatchError(ProblemDetailsException):
    """The key was already used for a different initiation request."""

    def __init__(self, idempotency_key: str, method: str):
        super().__init__(
            status_code=422,
            title="Idempotency Key Mismatch",
            detail=f"Idempotency key '{idempotency_key}' was already used with a different request body",
            type_uri="https://example.com/problems/idempotency-key-mismatch",
            extensions={
                "code": "IDEMPOTENCY_KEY_MISMATCH",
                "retryable": False,
                "idempotency_key": idempotency_key,
                "method": method,
            },
        )


def request_fingerprint(request_body: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of a request body."""
    canonical = json.dumps(request_body, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class IdempotencyService:
    """
    Stores and replays initiation responses per (key, method).

    ``method`` scopes a key to an operation and caller, so two customers
    choosing the same key never see each other's bookings.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _find(self, idempotency_key: str, method: str) -> Optional[IdempotencyRecord]:
        result = await self.db.execute(
            select(IdempotencyRecord).where(
                IdempotencyRecord.idempotency_key == idempotency_key,
                IdempotencyRecord.method == method,
            ).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def check_idempotency(
        self,
        idempotency_key: str,
        method: str,
        request_body: dict[str, Any],
    ) -> tuple[int, dict[str, Any]] | None:
        """
        Return the stored (status_code, body) for a replayed request.

        Returns:
            None when the key is new or its record has expired

        Raises:
            IdempotencyMismatchError: If the key was used with a different body
        """
        record = await self._find(idempotency_key, method)
        if record is None or record.is_expired():
            return None

        fingerprint = request_fingerprint(request_body)
        if record.request_body_hash != fingerprint:
            logger.warning(
                "Idempotency key reused with a different body",
                extra={
                    "idempotency_key": idempotency_key,
                    "method": method,
                    "stored_hash": record.request_body_hash[:8],
                    "new_hash": fingerprint[:8],
                }
            )
            raise IdempotencyMismatchError(idempotency_key, method)

        logger.info(
            "Replaying stored initiation response",
            extra={
                "idempotency_key": idempotency_key,
                "method": method,
                "status_code": record.response_status_code,
            }
        )
        return record.response_status_code, json.loads(record.response_body)

    async def store_response(
        self,
        idempotency_key: str,
        method: str,
        request_body: dict[str, Any],
        status_code: int,
        response_body: dict[str, Any],
        ttl_hours: int = 24
    ) -> None:
        """
        Record the response for a key, replacing an expired record for it.

        A concurrent request that stored the same key first wins; this call
        then leaves its record alone.
        """
        now = datetime.now(timezone.utc)
        await self.db.execute(
            delete(IdempotencyRecord).where(
                IdempotencyRecord.idempotency_key == idempotency_key,
                IdempotencyRecord.method == method,
                IdempotencyRecord.expires_at <= now,
            )
        )
        self.db.add(
            IdempotencyRecord(
                idempotency_key=idempotency_key,
                method=method,
                request_body_hash=request_fingerprint(request_body),
                response_status_code=status_code,
                response_body=json.dumps(response_body, sort_keys=True, separators=(",", ":")),
                expires_at=now + timedelta(hours=ttl_hours),
            )
        )
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info(
                "Idempotency record stored concurrently",
                extra={"idempotency_key": idempotency_key, "method": method}
            )
            return

        logger.info(
            "Stored idempotency record",
            extra={"idempotency_key": idempotency_key, "method": method, "status_code": status_code}
        )

    async def cleanup_expired_records(self) -> int:
        """Delete expired records and return how many were removed."""
        result = await self.db.execute(
            delete(IdempotencyRecord).where(IdempotencyRecord.expires_at <= datetime.now(timezone.utc))
        )
        await self.db.commit()

        if result.rowcount:
            logger.info("Cleaned up expired idempotency records", extra={"deleted_count": result.rowcount})
        return result.rowcount
