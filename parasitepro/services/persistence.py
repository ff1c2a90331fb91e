"""Persistence for users, credit balances, analyses, detections, share links
and feedback.

The store owns every credit mutation. Debit and the `processing` row are
written in one transaction while the user's row is locked; terminal
transitions are conditional on the row still being `processing`, so an
analysis reaches exactly one of `completed` / `failed`, and a refund can only
ride along with the `failed` transition.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from parasitepro.shared.detection_contract import (
    ANALYSIS_STATUSES,
    DISCLAIMER,
    AnalysisNotFoundError,
    InsufficientCreditsError,
    InvalidRequestError,
    ShareLinkExpiredError,
    ShareLinkNotFoundError,
    UserNotFoundError,
    failure_message,
)

LOGGER = logging.getLogger(__name__)

SHARE_DEFAULT_DAYS = 30
SHARE_MAX_DAYS = 90
SHARE_TOKEN_BYTES = 24
MAX_FEEDBACK_COMMENT_LENGTH = 2000

Base = declarative_base()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"
    __table_args__ = (CheckConstraint("image_credits >= 0", name="ck_users_credits_non_negative"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    email = Column(String(255), unique=True, nullable=False, index=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    image_credits = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=_now)

    analyses = relationship(
        "Analysis",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Analysis(Base):
    __tablename__ = "analyses"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_analyses_status",
        ),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    image_url = Column(Text, nullable=True)
    thumbnail_url = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="pending", index=True)

    sample_type = Column(String(50), nullable=True)
    collection_date = Column(String(32), nullable=True)
    location = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)

    overall_urgency = Column(String(20), nullable=True)
    provider = Column(String(64), nullable=True)
    result = Column(JSON, nullable=True)
    failure_reason = Column(Text, nullable=True)

    uploaded_at = Column(DateTime, nullable=False, default=_now, index=True)
    processing_started_at = Column(DateTime, nullable=True)
    processing_completed_at = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="analyses")
    detections = relationship(
        "Detection",
        back_populates="analysis",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Detection(Base):
    __tablename__ = "detections"

    id = Column(String(36), primary_key=True, default=_new_id)
    analysis_id = Column(
        String(36), ForeignKey("analyses.id", ondelete="CASCADE"), nullable=False, index=True
    )
    parasite_id = Column(String(100), nullable=False)
    common_name = Column(String(255), nullable=False)
    scientific_name = Column(String(255), nullable=True)
    parasite_type = Column(String(50), nullable=True)
    urgency_level = Column(String(50), nullable=True)
    life_stage = Column(String(50), nullable=True)

    confidence_score = Column(Float, nullable=False)
    confidence_raw = Column(Float, nullable=False)
    confidence_label = Column(String(20), nullable=False)
    is_reliable = Column(Boolean, nullable=False, default=False)

    bounding_box_x = Column(Float, nullable=True)
    bounding_box_y = Column(Float, nullable=True)
    bounding_box_width = Column(Float, nullable=True)
    bounding_box_height = Column(Float, nullable=True)

    created_at = Column(DateTime, nullable=False, default=_now)

    analysis = relationship("Analysis", back_populates="detections")


class SharedResult(Base):
    """Token link that lets a GP view one analysis without logging in."""

    __tablename__ = "shared_results"

    id = Column(String(36), primary_key=True, default=_new_id)
    analysis_id = Column(
        String(36), ForeignKey("analyses.id", ondelete="CASCADE"), nullable=False, index=True
    )
    share_token = Column(String(64), unique=True, nullable=False, index=True)
    created_by = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    expires_at = Column(DateTime, nullable=False)
    view_count = Column(Integer, nullable=False, default=0)
    last_viewed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_now)


class Feedback(Base):
    __tablename__ = "feedback"
    __table_args__ = (UniqueConstraint("analysis_id", "user_id", name="uq_feedback_analysis_user"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    analysis_id = Column(
        String(36), ForeignKey("analyses.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    was_helpful = Column(Boolean, nullable=True)
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_now)


def build_engine(database_url: str) -> Engine:
    """Engine for `database_url`; in-memory SQLite shares one connection."""

    if database_url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}, "future": True}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, **kwargs)

        @event.listens_for(engine, "connect")
        def _enable_sqlite_fk(dbapi_conn, _record) -> None:
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(database_url, pool_pre_ping=True, future=True)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def _as_utc(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def _to_iso_utc(dt: Optional[datetime]) -> Optional[str]:
    """ISO string; naive datetimes from the DB are treated as UTC."""

    if dt is None:
        return None
    return _as_utc(dt).isoformat()


def _bbox_value(det: Mapping[str, Any], key: str) -> Optional[float]:
    box = det.get("boundingBox") or {}
    value = box.get(key) if isinstance(box, dict) else None
    return float(value) if value is not None else None


class AnalysisStore:
    """Users, credit ledger and analysis rows behind an injected session factory."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    @classmethod
    def from_url(cls, database_url: str) -> "AnalysisStore":
        return cls(build_session_factory(build_engine(database_url)))

    def create_schema(self) -> None:
        engine = self._session_factory.kw["bind"]
        Base.metadata.create_all(bind=engine)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError:
            db.rollback()
            LOGGER.exception("Database error; transaction rolled back")
            raise
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # -- users / credits -------------------------------------------------

    def create_user(
        self,
        email: str,
        *,
        credits: int = 0,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> str:
        with self._session() as db:
            user = User(email=email, image_credits=int(credits), first_name=first_name, last_name=last_name)
            db.add(user)
            db.commit()
            return user.id

    def delete_user(self, user_id: str) -> None:
        with self._session() as db:
            user = db.get(User, user_id)
            if user is None:
                raise UserNotFoundError(f"User {user_id} not found")
            db.delete(user)
            db.commit()

    def get_credits(self, user_id: str) -> int:
        with self._session() as db:
            balance = db.execute(
                select(User.image_credits).where(User.id == user_id)
            ).scalar_one_or_none()
        if balance is None:
            raise UserNotFoundError(f"User {user_id} not found")
        return int(balance)

    def check_credits(self, user_id: str, required: int = 1) -> int:
        """Unlocked pre-check; the debit re-checks under the row lock."""

        balance = self.get_credits(user_id)
        if balance < required:
            raise InsufficientCreditsError(balance)
        return balance

    def grant_credits(self, user_id: str, amount: int) -> int:
        """Apply a purchase (payment processor effect). Returns the new balance."""

        if int(amount) <= 0:
            raise ValueError("amount must be positive")
        with self._session() as db:
            res = db.execute(
                update(User)
                .where(User.id == user_id)
                .values(image_credits=User.image_credits + int(amount))
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 0:
                raise UserNotFoundError(f"User {user_id} not found")
            db.commit()
        return self.get_credits(user_id)

    def debit_and_create(
        self,
        user_id: str,
        *,
        image_url: Optional[str],
        thumbnail_url: Optional[str],
        metadata: Mapping[str, Any],
    ) -> Tuple[str, int]:
        """Debit one credit and create the `processing` row in one transaction.

        Returns (analysis_id, remaining balance).
        """

        with self._session() as db:
            locked = db.execute(
                select(User.id, User.image_credits).where(User.id == user_id).with_for_update()
            ).first()
            if locked is None:
                raise UserNotFoundError(f"User {user_id} not found")

            # Conditional debit: a concurrent upload that already spent the last
            # credit leaves nothing for this one.
            res = db.execute(
                update(User)
                .where(User.id == user_id, User.image_credits >= 1)
                .values(image_credits=User.image_credits - 1)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                db.rollback()
                raise InsufficientCreditsError(int(locked.image_credits))

            now = _now()
            analysis = Analysis(
                user_id=user_id,
                image_url=image_url,
                thumbnail_url=thumbnail_url,
                status="processing",
                sample_type=metadata.get("sampleType"),
                collection_date=metadata.get("collectionDate"),
                location=metadata.get("location"),
                notes=metadata.get("notes"),
                uploaded_at=now,
                processing_started_at=now,
            )
            db.add(analysis)
            db.flush()
            analysis_id = analysis.id
            balance = db.execute(
                select(User.image_credits).where(User.id == user_id)
            ).scalar_one()
            db.commit()

        LOGGER.info("Debited 1 credit from user %s for analysis %s (balance %d)", user_id, analysis_id, balance)
        return analysis_id, int(balance)

    # -- terminal transitions -------------------------------------------

    def complete(self, analysis_id: str, outcome: Mapping[str, Any]) -> bool:
        """processing -> completed with detections attached. False if already terminal."""

        all_detections = list(outcome.get("detections", []) or []) + list(
            outcome.get("lowConfidenceDetections", []) or []
        )
        with self._session() as db:
            res = db.execute(
                update(Analysis)
                .where(Analysis.id == analysis_id, Analysis.status == "processing")
                .values(
                    status="completed",
                    result=dict(outcome),
                    overall_urgency=outcome.get("overallUrgency"),
                    provider=outcome.get("provider"),
                    processing_completed_at=_now(),
                )
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                db.rollback()
                LOGGER.warning("Analysis %s is no longer processing; completion ignored", analysis_id)
                return False

            for det in all_detections:
                db.add(
                    Detection(
                        analysis_id=analysis_id,
                        parasite_id=str(det.get("parasiteId") or "unknown"),
                        common_name=str(det.get("commonName") or "unknown"),
                        scientific_name=det.get("scientificName"),
                        parasite_type=det.get("parasiteType"),
                        urgency_level=det.get("urgencyLevel"),
                        life_stage=det.get("lifeStage"),
                        confidence_score=float(det.get("confidenceCalibrated", det.get("confidenceScore", 0.0))),
                        confidence_raw=float(det.get("confidenceRaw", det.get("confidenceScore", 0.0))),
                        confidence_label=str(det.get("confidenceLabel") or "insufficient"),
                        is_reliable=bool(det.get("isReliable")),
                        bounding_box_x=_bbox_value(det, "x"),
                        bounding_box_y=_bbox_value(det, "y"),
                        bounding_box_width=_bbox_value(det, "width"),
                        bounding_box_height=_bbox_value(det, "height"),
                    )
                )
            db.commit()
        return True

    def fail_and_refund(self, analysis_id: str, reason: str) -> bool:
        """processing -> failed and refund the debited credit, atomically.

        Returns False (and refunds nothing) if the analysis already left
        `processing`.
        """

        with self._session() as db:
            user_id = db.execute(
                select(Analysis.user_id).where(Analysis.id == analysis_id)
            ).scalar_one_or_none()
            if user_id is None:
                raise AnalysisNotFoundError(f"Analysis {analysis_id} not found")

            res = db.execute(
                update(Analysis)
                .where(Analysis.id == analysis_id, Analysis.status == "processing")
                .values(
                    status="failed",
                    failure_reason=str(reason)[:1000],
                    processing_completed_at=_now(),
                )
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                db.rollback()
                LOGGER.warning("Analysis %s is no longer processing; refund skipped", analysis_id)
                return False

            db.execute(
                update(User)
                .where(User.id == user_id)
                .values(image_credits=User.image_credits + 1)
                .execution_options(synchronize_session=False)
            )
            db.commit()

        LOGGER.info("Analysis %s failed; refunded 1 credit to user %s", analysis_id, user_id)
        return True

    # -- reads -----------------------------------------------------------

    def get_analysis(self, analysis_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        with self._session() as db:
            q = select(Analysis).where(Analysis.id == analysis_id)
            if user_id is not None:
                q = q.where(Analysis.user_id == user_id)
            row = db.execute(q).scalar_one_or_none()
            if row is None:
                raise AnalysisNotFoundError(f"Analysis {analysis_id} not found")
            return analysis_to_dict(row)

    def get_status(self, analysis_id: str) -> str:
        with self._session() as db:
            status = db.execute(
                select(Analysis.status).where(Analysis.id == analysis_id)
            ).scalar_one_or_none()
        if status is None:
            raise AnalysisNotFoundError(f"Analysis {analysis_id} not found")
        return str(status)

    def count_detections(self, analysis_id: str) -> int:
        with self._session() as db:
            return int(
                db.execute(
                    select(func.count(Detection.id)).where(Detection.analysis_id == analysis_id)
                ).scalar_one()
            )

    def list_history(
        self,
        user_id: str,
        *,
        limit: int = 20,
        offset: int = 0,
        status: Optional[str] = None,
        sample_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        if status is not None and status not in ANALYSIS_STATUSES:
            raise ValueError(f"Invalid status filter: {status}")

        filters = [Analysis.user_id == user_id]
        if status:
            filters.append(Analysis.status == status)
        if sample_type:
            filters.append(Analysis.sample_type == sample_type)

        with self._session() as db:
            total = db.execute(select(func.count(Analysis.id)).where(*filters)).scalar_one()
            rows = (
                db.execute(
                    select(Analysis)
                    .where(*filters)
                    .order_by(Analysis.uploaded_at.desc(), Analysis.id)
                    .offset(int(offset))
                    .limit(int(limit))
                )
                .scalars()
                .all()
            )
            items = [
                {
                    "id": r.id,
                    "thumbnailUrl": r.thumbnail_url,
                    "imageUrl": r.image_url,
                    "status": r.status,
                    "sampleType": r.sample_type,
                    "location": r.location,
                    "uploadedAt": _to_iso_utc(r.uploaded_at),
                    "completedAt": _to_iso_utc(r.processing_completed_at),
                    "detectionCount": len(r.detections),
                    "urgency": r.overall_urgency,
                }
                for r in rows
            ]

        return {"analyses": items, "total": int(total), "limit": int(limit), "offset": int(offset)}

    def delete_analysis(self, analysis_id: str, user_id: str) -> None:
        with self._session() as db:
            row = db.execute(
                select(Analysis).where(Analysis.id == analysis_id, Analysis.user_id == user_id)
            ).scalar_one_or_none()
            if row is None:
                raise AnalysisNotFoundError(f"Analysis {analysis_id} not found")
            if row.status == "processing":
                raise ValueError("Analysis is still processing")
            db.delete(row)
            db.commit()

    # -- share links -----------------------------------------------------

    def _owned_analysis_id(self, db: Session, analysis_id: str, user_id: str) -> str:
        found = db.execute(
            select(Analysis.id).where(Analysis.id == analysis_id, Analysis.user_id == user_id)
        ).scalar_one_or_none()
        if found is None:
            raise AnalysisNotFoundError(f"Analysis {analysis_id} not found")
        return found

    def _active_share(self, db: Session, analysis_id: str, now: datetime) -> Optional[SharedResult]:
        rows = (
            db.execute(
                select(SharedResult)
                .where(SharedResult.analysis_id == analysis_id)
                .order_by(SharedResult.expires_at.desc())
            )
            .scalars()
            .all()
        )
        for row in rows:
            if _as_utc(row.expires_at) > now:
                return row
        return None

    def create_share_link(
        self,
        analysis_id: str,
        user_id: str,
        *,
        expiry_days: int = SHARE_DEFAULT_DAYS,
        now: Optional[datetime] = None,
    ) -> Tuple[Dict[str, Any], bool]:
        """Return the active link for an owned analysis, creating one if needed.

        Returns (share, created).
        """

        if int(expiry_days) < 1:
            raise InvalidRequestError("expiryDays must be at least 1")
        now = now or _now()
        with self._session() as db:
            self._owned_analysis_id(db, analysis_id, user_id)
            existing = self._active_share(db, analysis_id, now)
            if existing is not None:
                return _share_to_dict(existing), False

            share = SharedResult(
                analysis_id=analysis_id,
                share_token=secrets.token_urlsafe(SHARE_TOKEN_BYTES),
                created_by=user_id,
                expires_at=now + timedelta(days=min(int(expiry_days), SHARE_MAX_DAYS)),
                created_at=now,
            )
            db.add(share)
            db.commit()
            out = _share_to_dict(share)

        LOGGER.info("Share link created for analysis %s (expires %s)", analysis_id, out["expiresAt"])
        return out, True

    def revoke_share_links(self, analysis_id: str, user_id: str) -> int:
        with self._session() as db:
            self._owned_analysis_id(db, analysis_id, user_id)
            rows = (
                db.execute(select(SharedResult).where(SharedResult.analysis_id == analysis_id))
                .scalars()
                .all()
            )
            for row in rows:
                db.delete(row)
            db.commit()
        LOGGER.info("Revoked %d share link(s) for analysis %s", len(rows), analysis_id)
        return len(rows)

    def share_status(
        self, analysis_id: str, user_id: str, *, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        with self._session() as db:
            self._owned_analysis_id(db, analysis_id, user_id)
            active = self._active_share(db, analysis_id, now or _now())
            if active is None:
                return {"hasActiveShare": False}
            return {"hasActiveShare": True, **_share_to_dict(active)}

    def view_shared(self, token: str, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Public read of a shared analysis; counts the view. No contact details."""

        now = now or _now()
        with self._session() as db:
            share = db.execute(
                select(SharedResult).where(SharedResult.share_token == token)
            ).scalar_one_or_none()
            if share is None:
                raise ShareLinkNotFoundError("Share link not found or has expired")
            if _as_utc(share.expires_at) <= now:
                raise ShareLinkExpiredError(
                    "This share link has expired", expired_at=_to_iso_utc(share.expires_at)
                )

            analysis = db.get(Analysis, share.analysis_id)
            owner = db.get(User, analysis.user_id)
            share.view_count = int(share.view_count or 0) + 1
            share.last_viewed_at = now
            db.commit()

            record = analysis_to_dict(analysis)
            return {
                "analysis": {
                    "id": record["analysisId"],
                    "imageUrl": record["thumbnailUrl"] or record["imageUrl"],
                    "status": record["status"],
                    "sampleType": record["sampleType"],
                    "collectionDate": record["collectionDate"],
                    "location": record["location"],
                    "uploadedAt": record["uploadedAt"],
                    "completedAt": record["completedAt"],
                    "detections": record["detections"],
                    "lowConfidenceDetections": record["lowConfidenceDetections"],
                    "overallUrgency": record["overallUrgency"],
                    "overallConclusion": record["overallConclusion"],
                    "recommendedActions": record["recommendedActions"],
                    "recommendedTests": record["recommendedTests"],
                },
                "patient": {"firstName": owner.first_name, "lastName": owner.last_name},
                "shareInfo": {
                    "expiresAt": _to_iso_utc(share.expires_at),
                    "viewCount": int(share.view_count),
                },
                "disclaimer": DISCLAIMER,
            }

    # -- feedback --------------------------------------------------------

    def submit_feedback(
        self,
        analysis_id: str,
        user_id: str,
        *,
        was_helpful: Optional[bool],
        comment: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Record (or replace) the owner's feedback on an analysis."""

        comment = (comment or "").strip() or None
        if comment is not None and len(comment) > MAX_FEEDBACK_COMMENT_LENGTH:
            raise InvalidRequestError(
                f"comment must be at most {MAX_FEEDBACK_COMMENT_LENGTH} characters"
            )
        with self._session() as db:
            self._owned_analysis_id(db, analysis_id, user_id)
            row = db.execute(
                select(Feedback).where(Feedback.analysis_id == analysis_id, Feedback.user_id == user_id)
            ).scalar_one_or_none()
            if row is None:
                row = Feedback(analysis_id=analysis_id, user_id=user_id)
                db.add(row)
            row.was_helpful = was_helpful
            row.comment = comment
            row.created_at = _now()
            db.commit()
            return _feedback_to_dict(row)

    def get_feedback(self, analysis_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        with self._session() as db:
            row = db.execute(
                select(Feedback).where(Feedback.analysis_id == analysis_id, Feedback.user_id == user_id)
            ).scalar_one_or_none()
            return _feedback_to_dict(row) if row is not None else None


def _share_to_dict(row: SharedResult) -> Dict[str, Any]:
    return {
        "shareToken": row.share_token,
        "expiresAt": _to_iso_utc(row.expires_at),
        "viewCount": int(row.view_count or 0),
        "createdAt": _to_iso_utc(row.created_at),
    }


def _feedback_to_dict(row: Feedback) -> Dict[str, Any]:
    return {
        "analysisId": row.analysis_id,
        "wasHelpful": row.was_helpful,
        "comment": row.comment,
        "submittedAt": _to_iso_utc(row.created_at),
    }


def analysis_to_dict(row: Analysis) -> Dict[str, Any]:
    """Final-state view of an analysis row (what polling callers receive)."""

    result: Dict[str, Any] = dict(row.result or {})
    out: Dict[str, Any] = {
        "analysisId": row.id,
        "userId": row.user_id,
        "status": row.status,
        "imageUrl": row.image_url,
        "thumbnailUrl": row.thumbnail_url,
        "sampleType": row.sample_type,
        "collectionDate": row.collection_date,
        "location": row.location,
        "uploadedAt": _to_iso_utc(row.uploaded_at),
        "processingStartedAt": _to_iso_utc(row.processing_started_at),
        "completedAt": _to_iso_utc(row.processing_completed_at),
        "provider": row.provider,
        "detections": list(result.get("detections", []) or []),
        "lowConfidenceDetections": list(result.get("lowConfidenceDetections", []) or []),
        "overallUrgency": row.overall_urgency or result.get("overallUrgency"),
        "overallConclusion": result.get("overallConclusion"),
        "recommendedActions": list(result.get("recommendedActions", []) or []),
        "recommendedTests": list(result.get("recommendedTests", []) or []),
        "imageQuality": result.get("imageQuality"),
        "analysisSteps": list(result.get("analysisSteps", []) or []),
    }
    if row.status == "failed":
        out["failureReason"] = row.failure_reason
        out["message"] = failure_message(row.failure_reason or "the AI providers were unavailable")
    return out
