"""Unit tests for the class registry and enrollment."""
import pytest

from educore.core.errors import ClassNotFound, InvalidParameters, NotAuthorized
from educore.services.classes import class_path, friendly_id_path
from educore.services.codes import FRIENDLY_CLASS_ID_PATTERN


class TestCreateClass:
    """Test class creation and friendly IDs."""

    def test_create_class(self, classes, store, run, teacher_class, teacher):
        assert FRIENDLY_CLASS_ID_PATTERN.match(teacher_class.friendly_id)
        assert teacher_class.teacher_id == teacher.id
        assert run(store.get(friendly_id_path(teacher_class.friendly_id))) == teacher_class.id

        document = run(store.get(class_path(teacher_class.id)))
        assert document["friendlyId"] == teacher_class.friendly_id
        assert document["instructorName"] == "Ms. Perera"

    @pytest.mark.parametrize("name,description", [("", "desc"), ("Maths", "   ")])
    def test_required_fields(self, classes, run, teacher, name, description):
        with pytest.raises(InvalidParameters):
            run(classes.create_class(name, description, teacher.id, "Ms. Perera"))

    def test_friendly_id_collision_retries(self, classes, store, run, teacher, monkeypatch):
        candidates = iter(["TAKEN1", "TAKEN1", "FRESH1"])
        monkeypatch.setattr("educore.services.classes.generate_friendly_class_id", lambda: next(candidates))
        run(store.set(friendly_id_path("TAKEN1"), "someone-else"))

        data = run(classes.create_class("Art", "Drawing", teacher.id, "Ms. Perera"))

        assert data.friendly_id == "FRESH1"
        assert run(store.get(friendly_id_path("TAKEN1"))) == "someone-else"

    def test_friendly_id_lookup_is_case_insensitive(self, classes, run, teacher_class):
        found = run(classes.get_class_by_friendly_id(teacher_class.friendly_id.lower()))

        assert found.id == teacher_class.id

    def test_unknown_friendly_id(self, classes, run):
        assert run(classes.get_class_by_friendly_id("NOPE00")) is None
        assert run(classes.get_class_by_friendly_id("   ")) is None

    def test_classes_by_teacher(self, classes, run, teacher_class, teacher, make_profile):
        other = make_profile("teacher_2", is_teacher=True)
        run(classes.create_class("History", "Ancient", other.id, "Mr. Silva"))

        mine = run(classes.classes_by_teacher(teacher.id))

        assert [c.id for c in mine] == [teacher_class.id]
        assert run(classes.classes_by_teacher("")) == []


class TestDeleteClass:
    """Test class deletion."""

    def test_owner_can_delete(self, classes, store, run, teacher_class, teacher):
        run(classes.delete_class(teacher_class.id, teacher.id))

        assert run(classes.get_class(teacher_class.id)) is None
        assert run(store.get(friendly_id_path(teacher_class.friendly_id))) is None

    def test_other_teacher_cannot_delete(self, classes, run, teacher_class, make_profile):
        other = make_profile("teacher_2", is_teacher=True)

        with pytest.raises(NotAuthorized):
            run(classes.delete_class(teacher_class.id, other.id))

    def test_missing_class(self, classes, run, teacher):
        with pytest.raises(ClassNotFound):
            run(classes.delete_class("missing", teacher.id))


class TestEnrollment:
    """Test enrollment flags and join requests."""

    def test_enroll_and_leave(self, classes, run, teacher_class, student):
        profile = run(classes.enroll(student.id, teacher_class.id))
        assert profile.enrolled_class_ids == {teacher_class.id: True}
        assert run(classes.is_enrolled(student.id, teacher_class.id)) is True

        profile = run(classes.leave(student.id, teacher_class.id))
        assert profile.enrolled_class_ids == {}

    def test_enroll_requires_class(self, classes, run, student):
        with pytest.raises(ClassNotFound):
            run(classes.enroll(student.id, "missing"))

    def test_is_taught_by(self, classes, ledger, run, teacher_class, teacher, student):
        run(classes.enroll(student.id, teacher_class.id))
        profile = run(ledger.get_profile(student.id))

        assert run(classes.is_taught_by(profile, teacher.id)) is True
        assert run(classes.is_taught_by(profile, "teacher_2")) is False

    def test_request_approve(self, classes, run, teacher_class, student):
        data = run(classes.request_to_join(
            teacher_class.friendly_id, student.id, user_name="Nimali", message="Please add me"
        ))
        assert student.id in data.pending_join_requests
        assert data.pending_join_requests[student.id].message == "Please add me"

        profile = run(classes.approve_join_request(teacher_class.id, student.id))

        assert profile.is_enrolled_in(teacher_class.id)
        assert run(classes.get_class(teacher_class.id)).pending_join_requests == {}

    def test_request_deny(self, classes, run, teacher_class, student):
        run(classes.request_to_join(teacher_class.friendly_id, student.id))
        run(classes.deny_join_request(teacher_class.id, student.id))

        assert run(classes.get_class(teacher_class.id)).pending_join_requests == {}
        assert run(classes.is_enrolled(student.id, teacher_class.id)) is False

    def test_request_when_already_enrolled(self, classes, run, teacher_class, student):
        run(classes.enroll(student.id, teacher_class.id))

        with pytest.raises(InvalidParameters):
            run(classes.request_to_join(teacher_class.friendly_id, student.id))

    def test_request_unknown_class(self, classes, run, student):
        with pytest.raises(ClassNotFound):
            run(classes.request_to_join("zzzzzz", student.id))
