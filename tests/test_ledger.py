"""Unit tests for the user credit ledger."""
import asyncio

import pytest

from educore.core.errors import InsufficientCredits, InvalidAmount, ProfileNotFound
from educore.domain.user import ProfileChanges
from educore.services.ledger import profile_path


class TestProfiles:
    """Test profile creation and lookup."""

    def test_ensure_profile_grants_starting_credits(self, ledger, run):
        profile = run(ledger.ensure_profile("new_user", email="new.user@school.lk"))

        assert profile.credits == 10
        assert profile.display_name == "new.user"
        assert profile.is_teacher is False
        assert profile.enrolled_class_ids == {}

    def test_ensure_profile_keeps_existing(self, ledger, run, student):
        profile = run(ledger.ensure_profile(student.id, email="other@school.lk"))

        assert profile.credits == 5
        assert profile.email == "student_1@school.lk"

    def test_list_profiles_oldest_first(self, ledger, clock, run):
        run(ledger.ensure_profile("first", email="first@school.lk"))
        clock.advance(minutes=1)
        run(ledger.ensure_profile("second", email="second@school.lk"))

        assert [p.id for p in run(ledger.list_profiles())] == ["first", "second"]

    def test_list_profiles_picks_up_profiles_on_sign_in(self, ledger, store, run):
        run(store.set(profile_path("legacy"), {"credits": 3}))
        assert run(ledger.list_profiles()) == []

        run(ledger.ensure_profile("legacy"))

        [profile] = run(ledger.list_profiles())
        assert profile.id == "legacy"
        assert profile.credits == 3

    def test_document_uses_camel_case_keys(self, ledger, store, run, student):
        document = run(store.get(profile_path(student.id)))

        assert document["credits"] == 5
        assert document["displayName"] == "Nimali"
        assert "isAccountDisabled" in document
        assert "id" not in document

    def test_require_profile_missing(self, ledger, run):
        with pytest.raises(ProfileNotFound) as exc_info:
            run(ledger.require_profile("ghost"))

        assert exc_info.value.status_code == 404

    @pytest.mark.parametrize("user_id", ["", "a/b"])
    def test_invalid_user_ids(self, user_id):
        with pytest.raises(ValueError):
            profile_path(user_id)

    def test_unknown_document_fields_survive_mutation(self, ledger, store, run, student):
        async def scenario():
            await store.update(profile_path(student.id), {"preferredLanguage": "Sinhala"})
            await ledger.credit(student.id, 1)
            return await store.get(profile_path(student.id))

        document = run(scenario())

        assert document["preferredLanguage"] == "Sinhala"
        assert document["credits"] == 6

    def test_mutation_bumps_last_updated(self, ledger, clock, run, student):
        clock.advance(hours=1)
        profile = run(ledger.credit(student.id, 1))

        assert profile == 6
        updated = run(ledger.get_profile(student.id))
        assert updated.last_updated_at == clock.now


class TestBalanceChanges:
    """Test set, credit and debit."""

    def test_set_balance(self, ledger, run, student):
        assert run(ledger.set_balance(student.id, 42)) == 42
        assert run(ledger.get_balance(student.id)) == 42

    def test_set_balance_to_zero_allowed(self, ledger, run, student):
        assert run(ledger.set_balance(student.id, 0)) == 0

    @pytest.mark.parametrize("value", [-1, 2.5, "10", True, None])
    def test_set_balance_rejects_invalid(self, ledger, run, student, value):
        with pytest.raises(InvalidAmount):
            run(ledger.set_balance(student.id, value))

    def test_credit_returns_new_balance(self, ledger, run, student):
        assert run(ledger.credit(student.id, 20)) == 25

    @pytest.mark.parametrize("amount", [0, -5])
    def test_credit_rejects_non_positive(self, ledger, run, student, amount):
        with pytest.raises(InvalidAmount):
            run(ledger.credit(student.id, amount))

    def test_credit_missing_profile(self, ledger, run):
        with pytest.raises(ProfileNotFound):
            run(ledger.credit("ghost", 5))

    def test_debit(self, ledger, run, teacher):
        assert run(ledger.debit(teacher.id, 30)) == 70

    def test_debit_insufficient(self, ledger, run, teacher):
        with pytest.raises(InsufficientCredits) as exc_info:
            run(ledger.debit(teacher.id, 101))

        assert exc_info.value.required == 101
        assert exc_info.value.available == 100
        assert exc_info.value.status_code == 402
        assert run(ledger.get_balance(teacher.id)) == 100


class TestTryDeduct:
    """Test usage deductions."""

    def test_deducts_when_affordable(self, ledger, run, student):
        assert run(ledger.try_deduct(student.id, 3)) is True
        assert run(ledger.get_balance(student.id)) == 2

    def test_exact_balance(self, ledger, run, student):
        assert run(ledger.try_deduct(student.id, 5)) is True
        assert run(ledger.get_balance(student.id)) == 0

    def test_refuses_when_short(self, ledger, run, student):
        assert run(ledger.try_deduct(student.id, 6)) is False
        assert run(ledger.get_balance(student.id)) == 5

    def test_teacher_is_not_charged(self, ledger, run, teacher):
        assert run(ledger.try_deduct(teacher.id, 500)) is True
        assert run(ledger.get_balance(teacher.id)) == 100

    def test_admin_is_not_charged(self, ledger, run, admin):
        assert run(ledger.try_deduct(admin.id, 1)) is True
        assert run(ledger.get_balance(admin.id)) == 0

    def test_rejects_non_positive(self, ledger, run, student):
        with pytest.raises(InvalidAmount):
            run(ledger.try_deduct(student.id, 0))

    def test_missing_profile(self, ledger, run):
        with pytest.raises(ProfileNotFound):
            run(ledger.try_deduct("ghost", 1))

    def test_concurrent_deductions_never_overdraw(self, ledger, run, make_profile):
        make_profile("racer", credits=1)

        async def scenario():
            return await asyncio.gather(
                ledger.try_deduct("racer", 1),
                ledger.try_deduct("racer", 1),
            )

        results = run(scenario())

        assert sorted(results) == [False, True]
        assert run(ledger.get_balance("racer")) == 0

    def test_concurrent_credits_all_land(self, ledger, run, student):
        async def scenario():
            await asyncio.gather(*[ledger.credit(student.id, 2) for _ in range(3)])

        run(scenario())

        assert run(ledger.get_balance(student.id)) == 11


class TestAdminEdits:
    """Test administrator profile edits."""

    def test_update_flags_and_credits(self, ledger, run, student):
        changes = ProfileChanges(is_teacher=True, credits=50)
        profile = run(ledger.admin_update_profile(student.id, changes))

        assert profile.is_teacher is True
        assert profile.credits == 50
        assert profile.display_name == "Nimali"

    def test_empty_display_name_clears_it(self, ledger, run, student):
        profile = run(ledger.admin_update_profile(student.id, ProfileChanges(display_name="")))

        assert profile.display_name is None

    def test_unset_fields_untouched(self, ledger, run, teacher):
        profile = run(ledger.admin_update_profile(teacher.id, ProfileChanges(is_admin=True)))

        assert profile.is_admin is True
        assert profile.is_teacher is True
        assert profile.credits == 100

    def test_disable_account(self, ledger, run, student):
        profile = run(ledger.set_account_disabled(student.id, True))

        assert profile.is_account_disabled is True
        assert run(ledger.set_account_disabled(student.id, False)).is_account_disabled is False

    def test_missing_profile(self, ledger, run):
        with pytest.raises(ProfileNotFound):
            run(ledger.admin_update_profile("ghost", ProfileChanges(credits=1)))
