import pytest
from sqlalchemy import select

from dental_backend import services
from dental_backend.db import db_session
from dental_backend.models import Patient
from dental_backend.scope import Scope, ScopeError, get_scoped, in_scope, owner_id, scoped


def test_clinic_scope_filters_queries(scope, other_scope):
    services.create_patient(scope, "Ann", "Mine", "1")
    services.create_patient(other_scope, "Otto", "Theirs", "2")

    with db_session() as s:
        names = [p.last_name for p in s.scalars(scoped(select(Patient), Patient, scope))]
    assert names == ["Mine"]


def test_platform_scope_sees_every_clinic(scope, other_scope):
    services.create_patient(scope, "Ann", "Mine", "1")
    services.create_patient(other_scope, "Otto", "Theirs", "2")

    assert len(services.list_patients(Scope.platform())) == 2


def test_explicit_clinic_narrows_super_admin(scope, other_scope, other_clinic):
    services.create_patient(scope, "Ann", "Mine", "1")
    services.create_patient(other_scope, "Otto", "Theirs", "2")

    narrowed = Scope(clinic_id=other_clinic[0].id, is_super_admin=True, explicit=True)
    assert [p.last_name for p in services.list_patients(narrowed)] == ["Theirs"]


def test_other_tenant_rows_look_missing(scope, other_scope):
    theirs = services.create_patient(other_scope, "Otto", "Theirs", "2")

    with db_session() as s:
        assert get_scoped(s, Patient, theirs.id, scope) is None
        assert get_scoped(s, Patient, theirs.id, Scope.platform()) is not None
    assert services.get_patient(scope, theirs.id) is None
    assert services.update_patient(scope, theirs.id, notes="x") is None
    assert services.delete_patient(scope, theirs.id) is False


def test_in_scope(scope, other_scope, patient):
    assert in_scope(patient, scope)
    assert not in_scope(patient, other_scope)
    assert in_scope(patient, Scope.platform())
    assert not in_scope(None, scope)


def test_owner_id():
    assert owner_id(Scope.clinic("org-1")) == "org-1"
    # clinic users cannot write elsewhere
    assert owner_id(Scope.clinic("org-1"), "org-2") == "org-1"
    assert owner_id(Scope.platform(), "org-2") == "org-2"
    with pytest.raises(ScopeError):
        owner_id(Scope.platform())


def test_scoped_query_without_clinic_raises():
    broken = Scope(clinic_id=None, is_super_admin=False)
    with pytest.raises(ScopeError):
        scoped(select(Patient), Patient, broken)
