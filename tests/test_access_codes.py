from datetime import date, datetime, timedelta, timezone
import pytest
from examcore.core.clock import utc_now
from examcore.models import orm
from examcore.services import access_codes as ledger
from examcore.services.access_codes import RedeemErrorKind, CodeStatus


@pytest.fixture
def library(make):
    make.test("T1", "edu-1")
    make.test("T2", "edu-1")
    make.test("T9", "edu-2")


def uses(db, code, educator_id="edu-1"):
    db.expire_all()
    return db.query(orm.AccessCode).filter_by(educator_id=educator_id, code=code).one().uses_used


def test_single_use_code_scenario(db, make, library):
    make.code("ABC12345", "T1", max_uses=1)
    make.code("XYZ00001", "T2", max_uses=5)

    first = ledger.redeem(db, "ABC12345", "stu-a", "edu-1")
    assert first.ok
    assert first.receipt.test_id == "T1"
    assert (first.receipt.uses_used, first.receipt.max_uses) == (1, 1)
    assert db.query(orm.Unlock).filter_by(student_id="stu-a", test_id="T1").count() == 1

    second = ledger.redeem(db, "ABC12345", "stu-b", "edu-1")
    assert second.error == RedeemErrorKind.EXHAUSTED

    wrong_test = ledger.redeem(db, "XYZ00001", "stu-a", "edu-1", expected_test_id="T1")
    assert wrong_test.error == RedeemErrorKind.TEST_MISMATCH
    assert uses(db, "XYZ00001") == 0


def test_code_is_normalized_and_scoped_to_educator(db, make, library):
    make.code("ABC12345", "T1", max_uses=2)
    assert ledger.redeem(db, "  abc12345 ", "stu-a", "edu-1").ok
    assert ledger.redeem(db, "ABC12345", "stu-a", "edu-2").error == RedeemErrorKind.NOT_FOUND
    assert ledger.redeem(db, "", "stu-a", "edu-1").error == RedeemErrorKind.NOT_FOUND


def test_rejections_never_consume_a_use(db, make, library):
    past = utc_now() - timedelta(minutes=1)
    make.code("OLD00001", "T1", max_uses=3, expires_at=past)
    make.code("FULL0001", "T1", max_uses=2, uses_used=2)
    for _ in range(3):
        assert ledger.redeem(db, "OLD00001", "stu-a", "edu-1").error == RedeemErrorKind.EXPIRED
        assert ledger.redeem(db, "FULL0001", "stu-a", "edu-1").error == RedeemErrorKind.EXHAUSTED
    assert uses(db, "OLD00001") == 0
    assert uses(db, "FULL0001") == 2
    assert db.query(orm.Unlock).count() == 0


def test_expiry_is_inclusive_of_the_instant(db, make, library):
    at = datetime(2030, 1, 1, 23, 59, 59, 999000, tzinfo=timezone.utc)
    make.code("EDGE0001", "T1", max_uses=3, expires_at=at)
    assert ledger.redeem(db, "EDGE0001", "stu-a", "edu-1", now=at).ok
    assert ledger.redeem(db, "EDGE0001", "stu-b", "edu-1", now=at + timedelta(milliseconds=1)).error == RedeemErrorKind.EXPIRED


def test_matching_expected_test_is_accepted(db, make, library):
    make.code("ABC12345", "T1", max_uses=1)
    assert ledger.redeem(db, "ABC12345", "stu-a", "edu-1", expected_test_id="T1").ok


def test_unlocked_test_ids_are_distinct(db, make, library):
    make.code("AAAA0001", "T2", max_uses=5)
    make.code("BBBB0001", "T1", max_uses=5)
    make.code("CCCC0001", "T2", max_uses=5)
    for c in ("AAAA0001", "BBBB0001", "CCCC0001"):
        assert ledger.redeem(db, c, "stu-a", "edu-1").ok
    assert ledger.unlocked_test_ids(db, "stu-a", "edu-1") == ["T1", "T2"]
    assert ledger.unlocked_test_ids(db, "stu-b", "edu-1") == []


def test_code_status_prefers_exhausted():
    row = orm.AccessCode(max_uses=1, uses_used=1, expires_at=utc_now() - timedelta(days=1))
    assert ledger.code_status(row) == CodeStatus.EXHAUSTED
    row.uses_used = 0
    assert ledger.code_status(row) == CodeStatus.EXPIRED
    row.expires_at = None
    assert ledger.code_status(row) == CodeStatus.ACTIVE


def test_create_generates_code(db, library):
    row = ledger.create_access_code(db, "edu-1", "T1", 10)
    assert len(row.code) == 8
    assert row.code.isalnum() and row.code == row.code.upper()
    assert row.test_title == "Test T1"
    assert row.expires_at is None


def test_create_validates(db, library):
    ledger.create_access_code(db, "edu-1", "T1", 1, code="dup00001")
    with pytest.raises(ledger.DuplicateCodeError):
        ledger.create_access_code(db, "edu-1", "T2", 1, code="DUP00001")
    # same code is fine for another educator
    make_other = ledger.create_access_code(db, "edu-2", "T9", 1, code="DUP00001")
    assert make_other.educator_id == "edu-2"
    with pytest.raises(ledger.InvalidMaxUsesError):
        ledger.create_access_code(db, "edu-1", "T1", 0)
    with pytest.raises(ledger.UnknownTestError):
        ledger.create_access_code(db, "edu-1", "T9", 1)


def test_expires_on_is_end_of_day(db, library):
    row = ledger.create_access_code(db, "edu-1", "T1", 1, expires_on=date(2030, 6, 30))
    assert row.expires_at == datetime(2030, 6, 30, 23, 59, 59, 999000, tzinfo=timezone.utc)


def test_update_rejects_max_uses_below_used(db, make, library):
    make.code("ABC12345", "T1", max_uses=5, uses_used=3)
    with pytest.raises(ledger.MaxUsesBelowUsedError):
        ledger.update_access_code(db, "edu-1", "ABC12345", max_uses=2)
    row = ledger.update_access_code(db, "edu-1", "abc12345", max_uses=3, test_id="T2", expires_on=date(2030, 1, 1))
    assert (row.max_uses, row.test_id, row.test_title) == (3, "T2", "Test T2")
    assert row.updated_at is not None
    row = ledger.update_access_code(db, "edu-1", "ABC12345", expires_on=None)
    assert row.expires_at is None
    with pytest.raises(ledger.UnknownCodeError):
        ledger.update_access_code(db, "edu-1", "NOPE0000", max_uses=9)


def test_delete(db, make, library):
    make.code("ABC12345", "T1")
    ledger.delete_access_code(db, "edu-1", "abc12345")
    assert db.query(orm.AccessCode).count() == 0
    with pytest.raises(ledger.UnknownCodeError):
        ledger.delete_access_code(db, "edu-1", "ABC12345")


def test_stats(db, make, library):
    now = utc_now()
    make.code("SOON0001", "T1", max_uses=5, uses_used=1, expires_at=now + timedelta(days=2))
    make.code("LATE0001", "T1", max_uses=5, uses_used=2, expires_at=now + timedelta(days=30))
    make.code("DONE0001", "T1", max_uses=1, uses_used=1, expires_at=now + timedelta(days=1))
    make.code("GONE0001", "T1", max_uses=5, expires_at=now - timedelta(days=1))
    views = ledger.list_access_codes(db, "edu-1", now)
    stats = ledger.access_code_stats(views, now)
    assert stats.active_count == 2
    assert stats.total_uses == 4
    assert stats.expiring_soon_count == 1
    assert {v.code: v.status for v in views}["GONE0001"] == CodeStatus.EXPIRED


# ---------------------------------------------------------------- HTTP

def test_redeem_endpoint_maps_errors(client, make, auth, library):
    make.code("ABC12345", "T1", max_uses=1)
    make.code("XYZ00001", "T2", max_uses=1)
    stu_a = auth("stu-a", "student")
    body = {"code": "ABC12345", "studentId": "stu-a", "educatorId": "edu-1"}

    r = client.post("/v1/access-codes/redeem", json=body, headers=stu_a)
    assert r.status_code == 200
    assert r.json()["testId"] == "T1"
    assert r.json()["usesUsed"] == 1

    r = client.post("/v1/access-codes/redeem", json={**body, "studentId": "stu-b"}, headers=auth("stu-b", "student"))
    assert r.status_code == 409
    assert r.json()["errorCode"] == "exhausted"

    r = client.post("/v1/access-codes/redeem", json={**body, "code": "XYZ00001", "expectedTestId": "T1"}, headers=stu_a)
    assert r.status_code == 422
    assert r.json()["errorCode"] == "test_mismatch"

    r = client.post("/v1/access-codes/redeem", json={**body, "code": "NOPE0000"}, headers=stu_a)
    assert r.status_code == 404
    assert r.json()["errorCode"] == "not_found"

    r = client.get("/v1/unlocks", params={"educatorId": "edu-1"}, headers=stu_a)
    assert r.json()["testIds"] == ["T1"]
    assert r.json()["tests"] == [
        {"testId": "T1", "title": "Test T1", "locked": False},
        {"testId": "T2", "title": "Test T2", "locked": True},
    ]


def test_redeem_for_someone_else_is_forbidden(client, make, auth, library):
    make.code("ABC12345", "T1")
    r = client.post("/v1/access-codes/redeem", json={"code": "ABC12345", "studentId": "stu-b", "educatorId": "edu-1"},
                    headers=auth("stu-a", "student"))
    assert r.status_code == 403


def test_expired_redeem_endpoint(client, make, auth, library):
    make.code("OLD00001", "T1", max_uses=1, expires_at=utc_now() - timedelta(days=1))
    r = client.post("/v1/access-codes/redeem", json={"code": "OLD00001", "studentId": "stu-a", "educatorId": "edu-1"},
                    headers=auth("stu-a", "student"))
    assert r.status_code == 409
    assert r.json()["errorCode"] == "expired"


def test_management_endpoints(client, auth, library):
    edu = auth("edu-1", "educator")
    r = client.post("/v1/access-codes", json={"testId": "T1", "maxUses": 3, "code": "promo001"}, headers=edu)
    assert r.status_code == 201
    assert r.json()["code"] == "PROMO001"
    assert r.json()["usesLeft"] == 3
    assert r.json()["status"] == "active"

    assert client.post("/v1/access-codes", json={"testId": "T1", "maxUses": 3, "code": "PROMO001"}, headers=edu).status_code == 409
    r = client.post("/v1/access-codes", json={"testId": "T1", "maxUses": 0}, headers=edu)
    assert r.status_code == 422
    r = client.post("/v1/access-codes", json={"testId": "T9", "maxUses": 1}, headers=edu)
    assert r.status_code == 422
    assert r.json()["errorCode"] == "unknown_test"

    r = client.patch("/v1/access-codes/PROMO001", json={"maxUses": 5, "expiresOn": "2030-12-31"}, headers=edu)
    assert r.status_code == 200
    assert r.json()["maxUses"] == 5
    assert r.json()["expiresAt"].startswith("2030-12-31T23:59:59.999")

    listed = client.get("/v1/access-codes", headers=edu).json()
    assert [c["code"] for c in listed] == ["PROMO001"]
    stats = client.get("/v1/access-codes/stats", headers=edu).json()
    assert stats == {"activeCount": 1, "totalUses": 0, "expiringSoonCount": 0}

    assert client.delete("/v1/access-codes/PROMO001", headers=edu).status_code == 204
    assert client.delete("/v1/access-codes/PROMO001", headers=edu).status_code == 404


def test_patch_below_used_is_422(client, make, auth, library):
    make.code("ABC12345", "T1", max_uses=5, uses_used=4)
    r = client.patch("/v1/access-codes/ABC12345", json={"maxUses": 3}, headers=auth("edu-1", "educator"))
    assert r.status_code == 422
    assert r.json()["errorCode"] == "max_uses_below_used"
    assert r.json()["extra"] == {"usesUsed": 4, "requested": 3}


def test_students_cannot_manage_codes(client, auth, library):
    r = client.post("/v1/access-codes", json={"testId": "T1", "maxUses": 3}, headers=auth("stu-a", "student"))
    assert r.status_code == 403


# ---------------------------------------------------------------- open tests

@pytest.mark.parametrize("requires_unlock,is_public", [(False, False), (True, True)])
def test_code_for_open_test_spends_nothing(db, make, requires_unlock, is_public):
    make.test("FREE", "edu-1", requires_unlock=requires_unlock, is_public=is_public)
    make.code("FREE0001", "FREE", max_uses=1)
    first = ledger.redeem(db, "FREE0001", "stu-a", "edu-1")
    second = ledger.redeem(db, "FREE0001", "stu-b", "edu-1")
    assert first.ok and second.ok
    assert first.receipt.consumed is False
    assert first.receipt.unlock_id is None
    assert uses(db, "FREE0001") == 0
    assert db.query(orm.Unlock).count() == 0


def test_open_test_still_checks_test_context(db, make):
    make.test("FREE", "edu-1", requires_unlock=False)
    make.code("FREE0001", "FREE", max_uses=1)
    assert ledger.redeem(db, "FREE0001", "stu-a", "edu-1", expected_test_id="T1").error == RedeemErrorKind.TEST_MISMATCH


def test_locked_test_still_consumes(db, make, library):
    make.code("ABC12345", "T1", max_uses=1)
    outcome = ledger.redeem(db, "ABC12345", "stu-a", "edu-1")
    assert outcome.receipt.consumed is True
    assert uses(db, "ABC12345") == 1


def test_list_test_access(db, make):
    make.test("LOCKED", "edu-1")
    make.test("OPEN", "edu-1", requires_unlock=False)
    make.test("PUBLIC", "edu-1", is_public=True)
    make.test("UNLOCKED", "edu-1")
    make.test("OTHER", "edu-2")
    make.code("UNLK0001", "UNLOCKED", max_uses=1)
    assert ledger.redeem(db, "UNLK0001", "stu-a", "edu-1").ok
    access = {a.test_id: a.locked for a in ledger.list_test_access(db, "stu-a", "edu-1")}
    assert access == {"LOCKED": True, "OPEN": False, "PUBLIC": False, "UNLOCKED": False}
    assert {a.test_id: a.locked for a in ledger.list_test_access(db, "stu-b", "edu-1")}["UNLOCKED"] is True


def test_redeem_endpoint_reports_unconsumed_code(client, make, auth):
    make.test("FREE", "edu-1", requires_unlock=False)
    make.code("FREE0001", "FREE", max_uses=1)
    r = client.post("/v1/access-codes/redeem", json={"code": "FREE0001", "studentId": "stu-a", "educatorId": "edu-1"},
                    headers=auth("stu-a", "student"))
    assert r.status_code == 200
    assert r.json()["consumed"] is False
    assert r.json()["unlockId"] is None
    assert r.json()["usesUsed"] == 0


# ---------------------------------------------------------------- edit vs redeem

def test_edit_loses_to_a_redemption_landing_mid_edit(db, make, session_factory, monkeypatch, library):
    make.code("ABC12345", "T1", max_uses=3)
    real_now = ledger.utc_now
    landed = []

    def now_with_redemption_in_between():
        # runs after the edit has read the row and before it commits
        if not landed:
            with session_factory() as other:
                landed.append(ledger.redeem(other, "ABC12345", "stu-a", "edu-1", now=real_now()))
        return real_now()

    monkeypatch.setattr(ledger, "utc_now", now_with_redemption_in_between)
    with pytest.raises(ledger.ConcurrentModificationError):
        ledger.update_access_code(db, "edu-1", "ABC12345", max_uses=1)

    assert landed[0].ok
    db.expire_all()
    row = db.query(orm.AccessCode).filter_by(code="ABC12345").one()
    assert (row.max_uses, row.uses_used) == (3, 1)
