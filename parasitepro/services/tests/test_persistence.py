from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from parasitepro.services.persistence import AnalysisStore
from parasitepro.shared.detection_contract import (
    AnalysisNotFoundError,
    InsufficientCreditsError,
    InvalidRequestError,
    ShareLinkExpiredError,
    ShareLinkNotFoundError,
    UserNotFoundError,
)

META = {"sampleType": "stool", "collectionDate": "2024-05-01", "location": "Darwin", "notes": None}


@pytest.fixture()
def store() -> AnalysisStore:
    s = AnalysisStore.from_url("sqlite://")
    s.create_schema()
    return s


def _debit(store: AnalysisStore, user_id: str, **overrides):
    meta = {**META, **overrides}
    return store.debit_and_create(user_id, image_url="/storage/x.jpg", thumbnail_url=None, metadata=meta)


def _outcome(urgency: str = "moderate") -> dict:
    reliable = {
        "parasiteId": "giardia-001",
        "commonName": "Giardia",
        "scientificName": "Giardia lamblia",
        "parasiteType": "protozoa",
        "urgencyLevel": urgency,
        "confidenceScore": 0.88,
        "confidenceRaw": 0.9,
        "confidenceCalibrated": 0.88,
        "confidenceLabel": "high",
        "isReliable": True,
        "boundingBox": {"x": 0.1, "y": 0.1, "width": 0.2, "height": 0.2},
    }
    low = dict(reliable, commonName="Blastocystis", parasiteId="blastocystis-001", isReliable=False,
               confidenceScore=0.4, confidenceRaw=0.42, confidenceCalibrated=0.4, confidenceLabel="insufficient",
               boundingBox=None)
    return {
        "provider": "claude",
        "detections": [reliable],
        "lowConfidenceDetections": [low],
        "overallUrgency": urgency,
        "overallConclusion": "Giardia cysts likely.",
        "recommendedActions": ["See a GP"],
        "recommendedTests": ["Stool PCR"],
        "imageQuality": {"qualityLabel": "good"},
        "analysisSteps": [],
    }


def test_debit_creates_processing_row(store: AnalysisStore) -> None:
    user_id = store.create_user("a@example.com", credits=2)

    analysis_id, balance = _debit(store, user_id)

    assert balance == 1
    assert store.get_credits(user_id) == 1
    record = store.get_analysis(analysis_id, user_id)
    assert record["status"] == "processing"
    assert record["sampleType"] == "stool"
    assert record["processingStartedAt"] is not None


def test_debit_rejects_without_credit(store: AnalysisStore) -> None:
    user_id = store.create_user("b@example.com", credits=0)

    with pytest.raises(InsufficientCreditsError):
        store.check_credits(user_id)
    with pytest.raises(InsufficientCreditsError):
        _debit(store, user_id)

    assert store.get_credits(user_id) == 0
    assert store.list_history(user_id)["total"] == 0


def test_unknown_user(store: AnalysisStore) -> None:
    with pytest.raises(UserNotFoundError):
        store.get_credits("missing")
    with pytest.raises(UserNotFoundError):
        _debit(store, "missing")
    with pytest.raises(UserNotFoundError):
        store.grant_credits("missing", 5)


def test_second_debit_after_shared_precheck_is_rejected(store: AnalysisStore) -> None:
    user_id = store.create_user("c@example.com", credits=1)

    # Both requests pass the unlocked pre-check before either debits.
    assert store.check_credits(user_id) == 1
    assert store.check_credits(user_id) == 1

    _, balance = _debit(store, user_id)
    with pytest.raises(InsufficientCreditsError):
        _debit(store, user_id)

    assert balance == 0
    assert store.get_credits(user_id) == 0
    assert store.list_history(user_id)["total"] == 1


def test_parallel_uploads_spend_the_last_credit_once(tmp_path) -> None:
    store = AnalysisStore.from_url(f"sqlite:///{tmp_path / 'ledger.db'}")
    store.create_schema()
    user_id = store.create_user("cc@example.com", credits=1)
    barrier = threading.Barrier(2)
    outcomes: list = []

    def _upload() -> None:
        barrier.wait(timeout=10)
        try:
            store.check_credits(user_id)
            analysis_id, _ = _debit(store, user_id)
        except InsufficientCreditsError:
            outcomes.append("rejected")
        else:
            outcomes.append(analysis_id)

    workers = [threading.Thread(target=_upload) for _ in range(2)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=30)

    assert len(outcomes) == 2
    assert outcomes.count("rejected") == 1
    assert store.get_credits(user_id) == 0
    assert store.list_history(user_id)["total"] == 1


def test_complete_stores_result_and_detections(store: AnalysisStore) -> None:
    user_id = store.create_user("d@example.com", credits=1)
    analysis_id, _ = _debit(store, user_id)

    assert store.complete(analysis_id, _outcome("high")) is True

    record = store.get_analysis(analysis_id, user_id)
    assert record["status"] == "completed"
    assert record["overallUrgency"] == "high"
    assert record["provider"] == "claude"
    assert record["completedAt"] is not None
    assert [d["commonName"] for d in record["detections"]] == ["Giardia"]
    assert [d["commonName"] for d in record["lowConfidenceDetections"]] == ["Blastocystis"]
    assert "failureReason" not in record
    assert store.count_detections(analysis_id) == 2
    assert store.get_credits(user_id) == 0


def test_fail_refunds_exactly_once(store: AnalysisStore) -> None:
    user_id = store.create_user("e@example.com", credits=1)
    analysis_id, _ = _debit(store, user_id)

    assert store.fail_and_refund(analysis_id, "the AI providers were unavailable") is True
    assert store.fail_and_refund(analysis_id, "again") is False

    assert store.get_credits(user_id) == 1
    record = store.get_analysis(analysis_id, user_id)
    assert record["status"] == "failed"
    assert record["failureReason"] == "the AI providers were unavailable"
    assert "refunded" in record["message"]


def test_terminal_states_are_exclusive(store: AnalysisStore) -> None:
    user_id = store.create_user("f@example.com", credits=2)
    done_id, _ = _debit(store, user_id)
    failed_id, _ = _debit(store, user_id)

    assert store.complete(done_id, _outcome()) is True
    assert store.fail_and_refund(done_id, "late failure") is False
    assert store.fail_and_refund(failed_id, "boom") is True
    assert store.complete(failed_id, _outcome()) is False

    assert store.get_status(done_id) == "completed"
    assert store.get_status(failed_id) == "failed"
    assert store.count_detections(failed_id) == 0
    assert store.get_credits(user_id) == 1


def test_get_analysis_scoped_to_owner(store: AnalysisStore) -> None:
    owner = store.create_user("g@example.com", credits=1)
    other = store.create_user("h@example.com", credits=1)
    analysis_id, _ = _debit(store, owner)

    with pytest.raises(AnalysisNotFoundError):
        store.get_analysis(analysis_id, other)
    with pytest.raises(AnalysisNotFoundError):
        store.fail_and_refund("missing", "x")


def test_history_filters_and_paginates(store: AnalysisStore) -> None:
    user_id = store.create_user("i@example.com", credits=5)
    other = store.create_user("j@example.com", credits=1)
    ids = [_debit(store, user_id, sampleType=st)[0] for st in ("stool", "skin", "stool")]
    _debit(store, other)
    store.complete(ids[0], _outcome())
    store.fail_and_refund(ids[1], "boom")

    page = store.list_history(user_id, limit=2, offset=0)
    assert page["total"] == 3
    assert len(page["analyses"]) == 2
    assert page["limit"] == 2

    second = store.list_history(user_id, limit=2, offset=2)
    assert len(second["analyses"]) == 1
    seen = {a["id"] for a in page["analyses"]} | {a["id"] for a in second["analyses"]}
    assert seen == set(ids)

    completed = store.list_history(user_id, status="completed")
    assert [a["id"] for a in completed["analyses"]] == [ids[0]]
    assert completed["analyses"][0]["detectionCount"] == 2

    stool = store.list_history(user_id, sample_type="stool")
    assert stool["total"] == 2

    with pytest.raises(ValueError):
        store.list_history(user_id, status="done")


def test_grant_credits_and_delete_cascades(store: AnalysisStore) -> None:
    user_id = store.create_user("k@example.com")
    assert store.grant_credits(user_id, 3) == 3
    with pytest.raises(ValueError):
        store.grant_credits(user_id, 0)

    analysis_id, _ = _debit(store, user_id)
    with pytest.raises(ValueError):
        store.delete_analysis(analysis_id, user_id)
    store.complete(analysis_id, _outcome())

    store.delete_user(user_id)

    with pytest.raises(AnalysisNotFoundError):
        store.get_status(analysis_id)
    assert store.count_detections(analysis_id) == 0


def test_delete_analysis(store: AnalysisStore) -> None:
    user_id = store.create_user("l@example.com", credits=1)
    analysis_id, _ = _debit(store, user_id)
    store.fail_and_refund(analysis_id, "boom")

    store.delete_analysis(analysis_id, user_id)

    assert store.list_history(user_id)["total"] == 0
    with pytest.raises(AnalysisNotFoundError):
        store.delete_analysis(analysis_id, user_id)


def _completed(store: AnalysisStore, email: str, **user) -> tuple:
    user_id = store.create_user(email, credits=1, **user)
    analysis_id, _ = _debit(store, user_id)
    store.complete(analysis_id, _outcome())
    return user_id, analysis_id


def test_share_link_reused_while_active(store: AnalysisStore) -> None:
    user_id, analysis_id = _completed(store, "m@example.com")
    other = store.create_user("n@example.com")

    first, created = store.create_share_link(analysis_id, user_id)
    again, created_again = store.create_share_link(analysis_id, user_id)

    assert created is True and created_again is False
    assert again["shareToken"] == first["shareToken"]
    assert len(first["shareToken"]) >= 32
    with pytest.raises(AnalysisNotFoundError):
        store.create_share_link(analysis_id, other)
    with pytest.raises(AnalysisNotFoundError):
        store.share_status(analysis_id, other)
    with pytest.raises(InvalidRequestError):
        store.create_share_link(analysis_id, user_id, expiry_days=0)


def test_share_expiry_is_capped(store: AnalysisStore) -> None:
    user_id, analysis_id = _completed(store, "o@example.com")
    now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    share, _ = store.create_share_link(analysis_id, user_id, expiry_days=365, now=now)

    assert share["expiresAt"] == (now + timedelta(days=90)).isoformat()


def test_view_shared_counts_views_and_hides_contact(store: AnalysisStore) -> None:
    user_id, analysis_id = _completed(store, "p@example.com", first_name="Ada", last_name="Lee")
    share, _ = store.create_share_link(analysis_id, user_id)

    store.view_shared(share["shareToken"])
    view = store.view_shared(share["shareToken"])

    assert view["shareInfo"]["viewCount"] == 2
    assert view["patient"] == {"firstName": "Ada", "lastName": "Lee"}
    assert view["analysis"]["id"] == analysis_id
    assert view["analysis"]["overallConclusion"] == "Giardia cysts likely."
    assert "p@example.com" not in repr(view)
    assert store.share_status(analysis_id, user_id)["viewCount"] == 2

    with pytest.raises(ShareLinkNotFoundError):
        store.view_shared("no-such-token")


def test_expired_share_is_refused_and_replaced(store: AnalysisStore) -> None:
    user_id, analysis_id = _completed(store, "q@example.com")
    share, _ = store.create_share_link(analysis_id, user_id, expiry_days=30)
    later = datetime.now(timezone.utc) + timedelta(days=31)

    with pytest.raises(ShareLinkExpiredError) as excinfo:
        store.view_shared(share["shareToken"], now=later)
    assert excinfo.value.status_code == 410
    assert excinfo.value.expired_at == share["expiresAt"]

    assert store.share_status(analysis_id, user_id, now=later) == {"hasActiveShare": False}
    fresh, created = store.create_share_link(analysis_id, user_id, now=later)
    assert created is True
    assert fresh["shareToken"] != share["shareToken"]


def test_revoke_removes_every_link(store: AnalysisStore) -> None:
    user_id, analysis_id = _completed(store, "r@example.com")
    share, _ = store.create_share_link(analysis_id, user_id)

    assert store.revoke_share_links(analysis_id, user_id) == 1
    assert store.revoke_share_links(analysis_id, user_id) == 0
    with pytest.raises(ShareLinkNotFoundError):
        store.view_shared(share["shareToken"])


def test_feedback_upsert_and_validation(store: AnalysisStore) -> None:
    user_id, analysis_id = _completed(store, "s@example.com")
    other = store.create_user("t@example.com")

    store.submit_feedback(analysis_id, user_id, was_helpful=True, comment="  Very clear  ")
    assert store.get_feedback(analysis_id, user_id)["comment"] == "Very clear"

    replaced = store.submit_feedback(analysis_id, user_id, was_helpful=None)
    assert replaced["wasHelpful"] is None
    assert replaced["comment"] is None

    with pytest.raises(AnalysisNotFoundError):
        store.submit_feedback(analysis_id, other, was_helpful=True)
    with pytest.raises(InvalidRequestError):
        store.submit_feedback(analysis_id, user_id, was_helpful=False, comment="x" * 2001)
    assert store.get_feedback(analysis_id, other) is None


def test_delete_analysis_drops_shares_and_feedback(store: AnalysisStore) -> None:
    user_id, analysis_id = _completed(store, "u@example.com")
    share, _ = store.create_share_link(analysis_id, user_id)
    store.submit_feedback(analysis_id, user_id, was_helpful=True)

    store.delete_analysis(analysis_id, user_id)

    assert store.get_feedback(analysis_id, user_id) is None
    with pytest.raises(ShareLinkNotFoundError):
        store.view_shared(share["shareToken"])
