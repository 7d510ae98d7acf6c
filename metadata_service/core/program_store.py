"""
Hash-keyed program registry.
Append-only: programs are inserted once and never updated or deleted.
Logs only hashes - never metadata documents.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from metadata_service.core.errors import StoreError
from metadata_service.core.metrics import metrics
from metadata_service.db.models import Program as ProgramModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Program:
    """A registered program (in-memory representation)."""
    hash: str
    metadata: dict[str, Any]
    created_at: datetime


def _model_to_program(model: ProgramModel) -> Program:
    return Program(
        hash=model.hash,
        metadata=json.loads(model.metadata_json),
        created_at=datetime.fromisoformat(model.created_at),
    )


class ProgramStore:
    """SQL-backed program store; the unique hash constraint arbitrates concurrent writers."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def upsert(self, program_hash: str, metadata: dict[str, Any]) -> tuple[Program, bool]:
        """
        Insert a program unless its hash is already registered.

        First writer wins: an existing document is returned untouched, even if
        the new one differs.

        Returns:
            (stored program, True if this call created it)

        Raises:
            StoreError: On persistence failure
        """
        try:
            metadata_json = json.dumps(metadata, sort_keys=True)
        except (TypeError, ValueError) as e:
            raise StoreError(f"Metadata is not JSON serializable: {e}") from e

        db = self._session_factory()
        try:
            created = True
            db.add(ProgramModel(
                hash=program_hash,
                metadata_json=metadata_json,
                created_at=datetime.now(timezone.utc).isoformat(),
            ))
            try:
                db.commit()
            except IntegrityError:
                # Another writer registered this hash first
                db.rollback()
                created = False

            model = db.query(ProgramModel).filter(ProgramModel.hash == program_hash).first()
            if model is None:
                raise StoreError("Program vanished after insert")
            program = _model_to_program(model)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"store_upsert_failed error_type={type(e).__name__}")
            raise StoreError(f"Database error: {type(e).__name__}") from e
        finally:
            db.close()

        if created:
            metrics.inc("programs_registered_total")
            logger.info("program_registered", extra={"program_hash": program_hash})
        else:
            logger.info("program_already_registered", extra={"program_hash": program_hash})
        return program, created

    def get(self, program_hash: str) -> Optional[Program]:
        """Get a program by hash, or None if it is not registered."""
        db = self._session_factory()
        try:
            model = db.query(ProgramModel).filter(ProgramModel.hash == program_hash).first()
            return _model_to_program(model) if model else None
        except SQLAlchemyError as e:
            raise StoreError(f"Database error: {type(e).__name__}") from e
        finally:
            db.close()

    def list_hashes(self) -> list[str]:
        """All registered hashes, in registration order."""
        db = self._session_factory()
        try:
            rows = db.query(ProgramModel.hash).order_by(ProgramModel.seq).all()
            return [row[0] for row in rows]
        except SQLAlchemyError as e:
            raise StoreError(f"Database error: {type(e).__name__}") from e
        finally:
            db.close()

    def list_programs(self) -> list[Program]:
        """All registered programs, in registration order."""
        db = self._session_factory()
        try:
            models = db.query(ProgramModel).order_by(ProgramModel.seq).all()
            return [_model_to_program(m) for m in models]
        except SQLAlchemyError as e:
            raise StoreError(f"Database error: {type(e).__name__}") from e
        finally:
            db.close()
