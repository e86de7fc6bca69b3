"""
Unit tests for AttachmentResolver and ActionMapBuilder.
"""
import pytest

from core.exceptions import StructuralDataException
from models.action import Action
from models.asset import Asset, ImageField
from models.submission import Submission
from services.components.action_map_builder import ActionMapBuilder
from services.components.attachment_resolver import AttachmentResolver
from tests.fakes import attachment_record


def submission(sid, attachments=(), **images):
    return Submission.model_validate(
        {
            "_id": sid,
            "_attachments": list(attachments),
            "@images_map": {
                field: ([{"key": field, "value": value}] if value is not None else [])
                for field, value in images.items()
            },
        }
    )


class TestAttachmentResolver:
    def test_greatest_id_wins(self):
        attachments = [attachment_record(1, "a_x.jpg"), attachment_record(5, "a_x.jpg")]
        assert AttachmentResolver().resolve("x.jpg", attachments, 101).id == 5

    def test_result_does_not_depend_on_order(self):
        attachments = [attachment_record(9, "u/x.jpg"), attachment_record(3, "u/x.jpg"), attachment_record(4, "u/x.jpg")]
        resolver = AttachmentResolver()
        assert resolver.resolve("x.jpg", attachments, 1).id == 9
        assert resolver.resolve("x.jpg", list(reversed(attachments)), 1).id == 9

    def test_non_image_mimetype_is_ignored(self):
        attachments = [attachment_record(8, "u/x.jpg", mimetype="application/pdf"), attachment_record(2, "u/x.jpg")]
        assert AttachmentResolver().resolve("x.jpg", attachments, 1).id == 2

    def test_suffix_not_substring(self):
        attachments = [attachment_record(1, "u/x.jpg.bak")]
        assert AttachmentResolver().resolve("x.jpg", attachments, 1) is None

    def test_malformed_records_are_skipped(self):
        broken = {"id": 3, "filename": "u/x.jpg"}
        resolver = AttachmentResolver()

        result = resolver.resolve("x.jpg", [broken, attachment_record(2, "u/x.jpg")], 1)

        assert result.id == 2
        assert resolver.excluded == 1


class TestActionMapBuilder:
    @pytest.fixture
    def two_field_asset(self):
        return Asset(uid="aXk3", name="Survey", image_fields=[ImageField(autoname="photo"), ImageField(autoname="sketch")])

    def test_end_to_end_scenario_map(self, asset):
        submissions = [
            submission(101, [attachment_record(7, "user/attachments/cat.jpg")], photo="cat.jpg"),
            submission(102, [], photo=None),
        ]

        action_map = ActionMapBuilder().build(asset, submissions)

        first, second = action_map.submissions
        assert first.entries[0].action == Action.KEEP
        assert first.entries[0].attachment.id == 7
        assert first.entries[0].image_name == "101_cat.jpg"
        assert second.entries[0].action == Action.DELETE
        assert action_map.warnings == []

    def test_unresolved_value_is_none_with_warning(self, asset):
        action_map = ActionMapBuilder().build(asset, [submission(5, [], photo="dog.jpg")])

        entry = action_map.submissions[0].entries[0]
        assert entry.action == Action.NONE
        assert entry.desired_value == "dog.jpg"
        assert len(action_map.warnings) == 1

    def test_empty_string_means_delete(self, asset):
        action_map = ActionMapBuilder().build(asset, [submission(5, [], photo="")])
        assert action_map.submissions[0].entries[0].action == Action.DELETE

    def test_entries_follow_field_order(self, two_field_asset):
        action_map = ActionMapBuilder().build(two_field_asset, [submission(1, [], sketch="s.png")])
        assert [e.field for e in action_map.submissions[0].entries] == ["photo", "sketch"]

    def test_multiple_values_for_one_field_abort(self, asset):
        bad = Submission.model_validate(
            {
                "_id": 9,
                "@images_map": {"photo": [{"key": "a/photo", "value": "1.jpg"}, {"key": "b/photo", "value": "2.jpg"}]},
            }
        )

        with pytest.raises(StructuralDataException) as exc:
            ActionMapBuilder().build(asset, [bad])

        assert exc.value.details["asset"] == asset.uid
        assert exc.value.details["submission"] == 9
        assert exc.value.details["field"] == "photo"

    def test_deterministic(self, two_field_asset):
        submissions = [
            submission(1, [attachment_record(3, "u/a.jpg"), attachment_record(4, "u/a.jpg")], photo="a.jpg"),
            submission(2, [], sketch="b.png"),
        ]
        builder = ActionMapBuilder()
        assert builder.build(two_field_asset, submissions) == builder.build(two_field_asset, submissions)
