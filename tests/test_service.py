"""
tests/test_service.py -- Unit tests for AuthService (auth/service.py).

AuthService is exercised directly against a real AccountStore (named
shared-memory SQLite), a real InMemoryOTPLedger and TokenService, with the
SMS gateway and mailer replaced by recording fakes. No HTTP involved.

Coverage:
  - register: defaults, normalization, conflicts, self-registration switch
  - login: inactive and password-less accounts fail like a wrong password
  - refresh: picks up role changes, refuses deactivated accounts
  - reset tokens die once the password changes
  - OTP flow: every OTPState transition, SMS failure cleanup, attempt cap
  - link_phone: password re-check and ownership conflicts
"""

from __future__ import annotations

from dataclasses import replace

import pytest

from auth.models import Account, Role
from auth.service import FORGOT_PASSWORD_MESSAGE, AuthService, OTPState
from core.config import get_settings
from core.errors import Conflict, Forbidden, ServiceUnavailable, Unauthorized, ValidationFailed

PASSWORD = "Passw0rd!"
PHONE = "+9779841234567"


def _register(core, email: str = "alice@x.com", **kwargs):
    return core.service.register(email=email, password=PASSWORD, full_name=kwargs.pop("full_name", "Alice A"), **kwargs)


def _otp_register(core, phone: str = "9841234567", full_name: str = "Ram Bahadur"):
    code = core.service.request_otp(phone).code
    return core.service.verify_otp(phone, code, full_name)


class TestRegister:
    def test_defaults_to_psr_and_normalizes(self, core) -> None:
        result = _register(core, email="  Alice@X.com ", phone="984-123-4567")
        assert result.account.role is Role.PSR
        assert result.account.email == "alice@x.com"
        assert result.account.phone == PHONE
        assert result.account.password_hash != PASSWORD
        claims = core.tokens.verify_access(result.tokens.access_token)
        assert claims.subject == result.account.id
        assert claims.role is Role.PSR

    def test_explicit_admin_role(self, core) -> None:
        result = _register(core, role_id=1)
        assert result.account.role is Role.ADMIN

    def test_duplicate_email(self, core) -> None:
        _register(core)
        with pytest.raises(Conflict, match="email already exists"):
            _register(core, email="ALICE@x.com")

    def test_duplicate_phone(self, core) -> None:
        _otp_register(core)
        with pytest.raises(Conflict, match="phone number is already linked"):
            _register(core, phone="9841234567")

    def test_collects_every_field_error(self, core) -> None:
        with pytest.raises(ValidationFailed) as excinfo:
            core.service.register(email="not-an-email", password="abcdefgh", full_name="A", phone="123")
        fields = {f.field for f in excinfo.value.fields}
        assert fields == {"email", "password", "full_name", "phone"}

    def test_self_registration_disabled(self, core) -> None:
        settings = get_settings().model_copy(update={"self_registration_enabled": False})
        service = AuthService(core.store, core.ledger, core.tokens, core.sms, core.mailer, settings)
        with pytest.raises(Forbidden) as excinfo:
            service.register(email="bob@x.com", password=PASSWORD, full_name="Bob B")
        assert excinfo.value.code == "registration_disabled"


class TestLoginAndRefresh:
    def test_login_is_case_insensitive_on_email(self, core) -> None:
        _register(core)
        assert core.service.login("ALICE@x.com", PASSWORD).account.email == "alice@x.com"

    def test_inactive_account_cannot_login(self, core) -> None:
        account = _register(core).account
        core.store.save(replace(account, is_active=False))
        with pytest.raises(Unauthorized) as excinfo:
            core.service.login("alice@x.com", PASSWORD)
        assert excinfo.value.code == "bad_credentials"

    def test_account_without_password_cannot_login(self, core) -> None:
        core.store.create(Account(full_name="No Pass", email="nopass@x.com"))
        with pytest.raises(Unauthorized):
            core.service.login("nopass@x.com", "")

    def test_refresh_carries_current_role(self, core) -> None:
        """A role change lands in the next access token issued by refresh."""
        result = _register(core)
        core.store.save(replace(result.account, role=Role.ADMIN))
        pair = core.service.refresh(result.tokens.refresh_token)
        assert core.tokens.verify_access(pair.access_token).role is Role.ADMIN

    def test_refresh_refuses_deactivated_account(self, core) -> None:
        result = _register(core)
        core.store.save(replace(result.account, is_active=False))
        with pytest.raises(Unauthorized) as excinfo:
            core.service.refresh(result.tokens.refresh_token)
        assert excinfo.value.code == "invalid_refresh_token"

    def test_refresh_rejects_access_token(self, core) -> None:
        result = _register(core)
        with pytest.raises(Unauthorized):
            core.service.refresh(result.tokens.access_token)


class TestPasswordReset:
    def test_forgot_unknown_email_sends_nothing(self, core) -> None:
        assert core.service.forgot_password("ghost@x.com") is None
        assert core.mailer.sent == []
        assert FORGOT_PASSWORD_MESSAGE.startswith("If your email is registered")

    def test_forgot_rejects_malformed_email(self, core) -> None:
        with pytest.raises(ValidationFailed):
            core.service.forgot_password("nope")

    def test_reset_token_mailed_and_single_use(self, core) -> None:
        _register(core)
        token = core.service.forgot_password("alice@x.com")
        assert core.mailer.sent == [("alice@x.com", token)]

        core.service.reset_password(token, "Brand1New")
        assert core.service.login("alice@x.com", "Brand1New").account.email == "alice@x.com"
        with pytest.raises(Unauthorized) as excinfo:
            core.service.reset_password(token, "Another12")
        assert excinfo.value.code == "invalid_reset_token"

    def test_change_password_invalidates_outstanding_reset_token(self, core) -> None:
        account = _register(core).account
        token = core.service.forgot_password("alice@x.com")
        core.service.change_password(account.id, PASSWORD, "Changed12")
        with pytest.raises(Unauthorized):
            core.service.reset_password(token, "Another12")

    def test_weak_new_password_rejected_before_token_check(self, core) -> None:
        with pytest.raises(ValidationFailed):
            core.service.reset_password("garbage", "short")


class TestOTPFlow:
    def test_request_otp_sends_normalized_phone(self, core) -> None:
        dispatch = core.service.request_otp("09841234567")
        assert dispatch.phone == PHONE
        assert dispatch.state is OTPState.AWAITING_VERIFICATION
        assert core.sms.sent[-1][0] == PHONE
        assert dispatch.code in core.sms.sent[-1][1]

    def test_sms_failure_discards_code(self, core) -> None:
        core.sms.fail = True
        with pytest.raises(ServiceUnavailable) as excinfo:
            core.service.request_otp("9841234567")
        assert excinfo.value.code == "sms_failed"
        assert len(core.ledger) == 0

    def test_every_state_is_reachable(self) -> None:
        """The start state holds nothing, so only reachable states have members."""
        assert [s.name for s in OTPState] == [
            "AWAITING_VERIFICATION",
            "REGISTRATION_REQUIRED",
            "AUTHENTICATED",
            "REJECTED",
        ]

    def test_unknown_phone_without_request_is_rejected(self, core) -> None:
        outcome = core.service.verify_otp("9841234567", "123456")
        assert outcome.state is OTPState.REJECTED
        assert outcome.tokens is None

    def test_registration_required_then_authenticated(self, core) -> None:
        code = core.service.request_otp("9841234567").code
        pending = core.service.verify_otp("9841234567", code)
        assert pending.state is OTPState.REGISTRATION_REQUIRED
        assert core.store.find_by_phone(PHONE) is None

        done = core.service.verify_otp("9841234567", code, "Ram Bahadur")
        assert done.state is OTPState.AUTHENTICATED
        assert done.created is True
        assert done.account.password_hash is None
        assert done.account.role is Role.PSR
        assert core.tokens.verify_access(done.tokens.access_token).subject == done.account.id

    def test_code_is_single_use(self, core) -> None:
        code = core.service.request_otp("9841234567").code
        assert core.service.verify_otp("9841234567", code, "Ram Bahadur").state is OTPState.AUTHENTICATED
        assert core.service.verify_otp("9841234567", code).state is OTPState.REJECTED

    def test_existing_account_logs_in_without_name(self, core) -> None:
        first = _otp_register(core)
        code = core.service.request_otp(PHONE).code
        outcome = core.service.verify_otp(PHONE, code)
        assert outcome.state is OTPState.AUTHENTICATED
        assert outcome.created is False
        assert outcome.account.id == first.account.id

    def test_inactive_account_rejected(self, core) -> None:
        account = _otp_register(core).account
        core.store.save(replace(account, is_active=False))
        code = core.service.request_otp(PHONE).code
        assert core.service.verify_otp(PHONE, code).state is OTPState.REJECTED

    def test_too_many_wrong_codes_burn_the_entry(self, core) -> None:
        code = core.service.request_otp("9841234567").code
        wrong = "000000" if code != "000000" else "111111"
        for _ in range(get_settings().otp_max_attempts):
            assert core.service.verify_otp("9841234567", wrong, "Ram Bahadur").state is OTPState.REJECTED
        assert core.service.verify_otp("9841234567", code, "Ram Bahadur").state is OTPState.REJECTED

    def test_malformed_code_is_validation_error(self, core) -> None:
        with pytest.raises(ValidationFailed) as excinfo:
            core.service.verify_otp("9841234567", "12345")
        assert [f.field for f in excinfo.value.fields] == ["otp"]


class TestLinkPhone:
    def test_link_phone(self, core) -> None:
        account = _register(core).account
        updated = core.service.link_phone(account.id, "9812345678", PASSWORD)
        assert updated.phone == "+9779812345678"
        assert core.store.find_by_phone("+9779812345678").id == account.id

    def test_relinking_own_phone_is_allowed(self, core) -> None:
        account = _register(core, phone="9812345678").account
        assert core.service.link_phone(account.id, "+9779812345678", PASSWORD).phone == "+9779812345678"

    def test_wrong_password(self, core) -> None:
        account = _register(core).account
        with pytest.raises(Unauthorized) as excinfo:
            core.service.link_phone(account.id, "9812345678", "WrongPass1")
        assert excinfo.value.code == "bad_credentials"

    def test_phone_owned_by_another_account(self, core) -> None:
        _otp_register(core)
        account = _register(core).account
        with pytest.raises(Conflict):
            core.service.link_phone(account.id, "9841234567", PASSWORD)
