"""
Service-level tests for the customer access layer.

Covers:
- uniqueness refusals and the unique-constraint backstop (races past the pre-check)
- scroll cursor semantics
- update atomicity (history and overwrite commit together or not at all)
- query param parsing
"""

import pytest
from sqlalchemy.exc import IntegrityError
from werkzeug.security import generate_password_hash

from app.crm import create_app, outcome
from app.crm.db import session_scope
from app.crm.models import Base, User
from app.crm.modules.customers import service
from app.crm.modules.customers.models import Customer, CustomerHistory
from app.crm.utils import parse_int_arg


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])

    with session_scope(app) as s:
        s.add_all(
            [
                User(username="alice", password_hash=generate_password_hash("pw")),
                User(username="bob", password_hash=generate_password_hash("pw")),
            ]
        )
    return app


def _payload(n: int, **overrides):
    body = {
        "fullname": f"Customer {n}",
        "company": f"Company {n}",
        "address": None,
        "phone": f"{n}{n}{n}",
        "email": f"c{n}@x.com",
        "birthday": None,
        "product": "Plan A",
        "note": "",
    }
    body.update(overrides)
    return body


def _create(app, n: int, username: str = "alice", **overrides) -> outcome.Outcome:
    with session_scope(app) as s:
        return service.create_customer(s, username, _payload(n, **overrides))


class TestCreate:
    def test_created_outcome(self, app):
        result = _create(app, 1)
        assert result.kind == outcome.CREATED
        assert result.status_code == 201
        assert result.data == {"fullname": "Customer 1", "company": "Company 1", "product": "Plan A"}

        with session_scope(app) as s:
            c = s.query(Customer).one()
            alice = s.query(User).filter(User.username == "alice").one()
            assert c.user_id == alice.id
            assert c.note is None  # blank strings are stored as NULL

    def test_ids_strictly_increase(self, app):
        _create(app, 1)
        _create(app, 2)
        _create(app, 3)
        with session_scope(app) as s:
            ids = [c.id for c in s.query(Customer).order_by(Customer.id).all()]
        assert ids == sorted(set(ids))
        assert len(ids) == 3

    def test_conflict_on_phone_or_email(self, app):
        _create(app, 1)
        assert _create(app, 2, phone="111").kind == outcome.CONFLICT
        assert _create(app, 3, email="c1@x.com").kind == outcome.CONFLICT
        with session_scope(app) as s:
            assert s.query(Customer).count() == 1

    def test_unknown_user(self, app):
        assert _create(app, 1, username="ghost").kind == outcome.NOT_FOUND
        assert _create(app, 1, username=None).kind == outcome.NOT_FOUND

    def test_unique_constraint_backstops_a_race(self, app, monkeypatch):
        _create(app, 1)
        # Simulate a concurrent insert that landed after the duplicate pre-check.
        monkeypatch.setattr(service, "find_duplicate_customer", lambda *a, **k: None)
        result = _create(app, 2, phone="111")
        assert result.kind == outcome.CONFLICT
        with session_scope(app) as s:
            assert s.query(Customer).count() == 1

    def test_numeric_phone_is_stored_as_text(self, app):
        assert _create(app, 1, phone=5550101).kind == outcome.CREATED
        with session_scope(app) as s:
            assert s.query(Customer).one().phone == "5550101"


class TestValidation:
    def test_required_fields(self):
        errs = service.validate_customer_payload({"fullname": " ", "phone": "1", "email": None})
        assert {e.field for e in errs} == {"fullname", "email"}

    def test_non_scalar_values_rejected(self):
        errs = service.validate_customer_payload(_payload(1, note={"a": 1}, company=True))
        assert {e.field for e in errs} == {"note", "company"}

    def test_birthday_must_be_iso(self):
        assert service.validate_customer_payload(_payload(1, birthday="2001-02-03")) == []
        assert [e.field for e in service.validate_customer_payload(_payload(1, birthday="03/02/2001"))] == ["birthday"]

    def test_invalid_create_outcome(self, app):
        result = _create(app, 1, email="")
        assert result.kind == outcome.INVALID
        assert result.status_code == 400
        assert result.data == {"errors": [{"field": "email", "message": "Email is required."}]}


class TestScroll:
    def _seed(self, app, count: int) -> None:
        for n in range(1, count + 1):
            assert _create(app, n).kind == outcome.CREATED

    def test_ascending_and_after_cursor(self, app):
        self._seed(app, 6)
        with session_scope(app) as s:
            result = service.get_customers_by_scroll(s, last_id=2, limit=10)
        ids = [row["id"] for row in result.data["datas"]]
        assert ids == [3, 4, 5, 6]
        assert all(i > 2 for i in ids)
        assert result.data["lastID"] == 6
        assert result.data["hasMore"] is False

    def test_limit_zero_returns_nothing(self, app):
        self._seed(app, 3)
        with session_scope(app) as s:
            for last_id in (0, 1, 5):
                for key in ("", "Customer", "zzz"):
                    result = service.get_customers_by_scroll(s, last_id=last_id, limit=0, key=key)
                    assert result.data["datas"] == []
                    assert result.data["lastID"] == 0

    def test_full_page_reports_has_more_even_at_the_end(self, app):
        self._seed(app, 2)
        with session_scope(app) as s:
            result = service.get_customers_by_scroll(s, limit=2)
        assert [row["id"] for row in result.data["datas"]] == [1, 2]
        assert result.data["hasMore"] is True

    def test_negative_limit_clamped(self, app):
        self._seed(app, 2)
        with session_scope(app) as s:
            result = service.get_customers_by_scroll(s, limit=-5)
        assert result.data["datas"] == []

    def test_cursor_below_one_means_from_start(self, app):
        self._seed(app, 2)
        with session_scope(app) as s:
            result = service.get_customers_by_scroll(s, last_id=-3, limit=5)
        assert [row["id"] for row in result.data["datas"]] == [1, 2]

    def test_search_key_is_literal(self, app):
        _create(app, 1, fullname="100% Organic")
        _create(app, 2, fullname="Plain", company="A_B")
        _create(app, 3, fullname="Other", company="AxB")
        with session_scope(app) as s:
            pct = service.get_customers_by_scroll(s, limit=10, key="%")
            underscore = service.get_customers_by_scroll(s, limit=10, key="A_B")
        assert [row["fullname"] for row in pct.data["datas"]] == ["100% Organic"]
        assert [row["fullname"] for row in underscore.data["datas"]] == ["Plain"]


class TestUpdate:
    def test_history_snapshot_and_overwrite(self, app):
        _create(app, 1, birthday="1980-01-01")
        with session_scope(app) as s:
            result = service.update_customer(s, 1, "bob", _payload(1, phone="999", birthday="1981-01-01"))
        assert result.kind == outcome.OK
        assert result.data is None

        with session_scope(app) as s:
            c = s.get(Customer, 1)
            bob = s.query(User).filter(User.username == "bob").one()
            alice = s.query(User).filter(User.username == "alice").one()
            assert c.phone == "999"
            assert c.birthday.isoformat() == "1981-01-01"
            assert c.user_id == bob.id

            histories = s.query(CustomerHistory).all()
            assert len(histories) == 1
            h = histories[0]
            assert h.customer_id == 1
            assert h.user_id == alice.id
            assert h.phone == "111"
            assert h.birthday.isoformat() == "1980-01-01"

    def test_one_history_row_per_update(self, app):
        _create(app, 1)
        for phone in ("a1", "a2", "a3"):
            with session_scope(app) as s:
                assert service.update_customer(s, 1, "alice", _payload(1, phone=phone)).kind == outcome.OK
        with session_scope(app) as s:
            phones = [h.phone for h in s.query(CustomerHistory).order_by(CustomerHistory.id).all()]
        assert phones == ["111", "a1", "a2"]

    def test_forbidden_leaves_no_trace(self, app):
        _create(app, 1)
        _create(app, 2)
        with session_scope(app) as s:
            result = service.update_customer(s, 2, "bob", _payload(2, email="c1@x.com"))
        assert result.kind == outcome.FORBIDDEN
        with session_scope(app) as s:
            assert s.get(Customer, 2).email == "c2@x.com"
            assert s.query(CustomerHistory).count() == 0

    def test_unique_constraint_backstops_a_race(self, app, monkeypatch):
        _create(app, 1)
        _create(app, 2)
        monkeypatch.setattr(service, "find_duplicate_customer", lambda *a, **k: None)
        with session_scope(app) as s:
            result = service.update_customer(s, 2, "bob", _payload(2, phone="111"))
        assert result.kind == outcome.FORBIDDEN
        with session_scope(app) as s:
            c = s.get(Customer, 2)
            assert c.phone == "222"
            assert s.query(CustomerHistory).count() == 0

    def test_failure_after_history_write_rolls_back_both(self, app, monkeypatch):
        _create(app, 1)
        real_record = service.record_customer_history

        def record_then_fail(s, customer):
            real_record(s, customer)
            s.flush()
            raise RuntimeError("store went away")

        monkeypatch.setattr(service, "record_customer_history", record_then_fail)
        with pytest.raises(RuntimeError):
            with session_scope(app) as s:
                service.update_customer(s, 1, "bob", _payload(1, phone="999"))

        with session_scope(app) as s:
            assert s.get(Customer, 1).phone == "111"
            assert s.query(CustomerHistory).count() == 0

    def test_not_found_order(self, app):
        with session_scope(app) as s:
            result = service.update_customer(s, 5, "ghost", _payload(5))
        assert result.kind == outcome.NOT_FOUND
        assert result.message == "Customer is not found"

        _create(app, 1)
        with session_scope(app) as s:
            result = service.update_customer(s, 1, "ghost", _payload(1))
        assert result.message == "User is not found"


@pytest.mark.parametrize(
    "raw,expected",
    [(None, 0), ("", 0), ("12", 12), ("12abc", 12), ("abc", 0), ("-3", -3), (" 7 ", 7), ("+4", 4)],
)
def test_parse_int_arg(raw, expected):
    assert parse_int_arg(raw) == expected


class TestIntegrityErrors:
    def test_owner_fk_violation_is_not_reported_as_duplicate(self, app, monkeypatch):
        _create(app, 1)
        # Acting user vanished between lookup and write: the FK fails, not a unique key.
        monkeypatch.setattr(service, "get_user_by_username", lambda s, name: User(id=999, username="gone"))
        with pytest.raises(IntegrityError) as excinfo:
            with session_scope(app) as s:
                service.update_customer(s, 1, "gone", _payload(1, phone="999"))
        assert not service.is_contact_collision(excinfo.value)

        with session_scope(app) as s:
            assert s.get(Customer, 1).phone == "111"
            assert s.query(CustomerHistory).count() == 0

    def test_create_fk_violation_propagates(self, app, monkeypatch):
        monkeypatch.setattr(service, "get_user_by_username", lambda s, name: User(id=999, username="gone"))
        with pytest.raises(IntegrityError):
            _create(app, 1)

    def test_unique_violation_is_a_contact_collision(self, app):
        _create(app, 1)
        with session_scope(app) as s:
            with pytest.raises(IntegrityError) as excinfo:
                with s.begin_nested():
                    s.add(Customer(fullname="Dup", phone="111", email="other@x.com", user_id=1))
                    s.flush()
        assert service.is_contact_collision(excinfo.value)


class TestBounds:
    def test_oversized_cursor_and_limit(self, app):
        _create(app, 1)
        huge = 10**20
        with session_scope(app) as s:
            assert service.get_customers_by_scroll(s, last_id=huge, limit=5).data["datas"] == []
            assert len(service.get_customers_by_scroll(s, limit=huge).data["datas"]) == 1

    def test_oversized_ids_not_found(self, app):
        _create(app, 1)
        huge = 10**20
        with session_scope(app) as s:
            assert service.get_customer(s, huge).kind == outcome.NOT_FOUND
            assert service.update_customer(s, huge, "alice", _payload(1)).kind == outcome.NOT_FOUND
            assert service.get_customer(s, 0).kind == outcome.NOT_FOUND

    def test_inactive_user_does_not_resolve(self, app):
        with session_scope(app) as s:
            s.add(User(username="dora", password_hash="x", is_active=False))
        assert _create(app, 1, username="dora").kind == outcome.NOT_FOUND
