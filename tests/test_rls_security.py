from __future__ import annotations

from sqlalchemy import String, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

import pytest

from backoffice import audit
from backoffice.platform.security.context import AuthContext
from backoffice.platform.security.errors import AuthorizationError, OutOfScopeError
from backoffice.platform.security.rls import apply_rls_filter, validate_rls_write


class Base(DeclarativeBase):
    pass


class DemoScopedModel(Base):
    __tablename__ = "demo_scoped_model"

    id: Mapped[int] = mapped_column(primary_key=True)
    organization_id: Mapped[str] = mapped_column(String(128))


@pytest.fixture(autouse=True)
def clear_audit() -> None:
    audit.audit_entries.clear()


def test_apply_rls_filter_adds_organization_filter() -> None:
    ctx = AuthContext(user_id="u1", organization_id="org-1")
    stmt = apply_rls_filter(select(DemoScopedModel), "demo.resource", ctx)

    assert "organization_id" in str(stmt)


def test_apply_rls_filter_admin_bypass() -> None:
    ctx = AuthContext(user_id="admin", organization_id="org-1", roles=["system.admin"])
    stmt = apply_rls_filter(select(DemoScopedModel), "demo.resource", ctx)

    assert "WHERE" not in str(stmt)


def test_validate_rls_write_blocks_out_of_scope_values() -> None:
    ctx = AuthContext(user_id="u2", organization_id="org-1", correlation_id="corr-rls")

    with pytest.raises(AuthorizationError):
        validate_rls_write("billing.invoice", {"organization_id": "org-2"}, ctx)

    with pytest.raises(OutOfScopeError) as exc_info:
        validate_rls_write("billing.invoice", {"status": "paid"}, ctx, existing_scope={"organization_id": "org-2"})
    assert exc_info.value.resource == "billing.invoice"

    denied = [entry for entry in audit.audit_entries if entry["action"] == "rls.denied"]
    assert len(denied) == 2
    assert denied[-1]["after"]["requested_organization_id"] == "org-2"
    assert denied[-1]["correlation_id"] == "corr-rls"


def test_validate_rls_write_allows_own_organization_and_admin() -> None:
    validate_rls_write("billing.invoice", {"organization_id": "org-1"}, AuthContext(user_id="u3", organization_id="org-1"))

    admin = AuthContext(user_id="admin", organization_id="org-1", is_super_admin=True)
    validate_rls_write("billing.invoice", {"organization_id": "org-2"}, admin)

    assert audit.audit_entries == []


def test_for_caller_derives_scope_bypass_from_roles() -> None:
    admin = AuthContext.for_caller("u4", ["System.Admin"], organization_id="org-1", correlation_id="c-1")
    member = AuthContext.for_caller("u5", ["billing.viewer"], organization_id="org-1", correlation_id=None)

    assert admin.is_super_admin is True
    assert admin.bypasses_scope is True
    assert member.is_super_admin is False
    assert member.bypasses_scope is False
    assert member.roles == ["billing.viewer"]
