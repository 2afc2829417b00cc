"""Item status derivation."""

import pytest

from dlwatch.snapshots.status import STATUS_LABELS, is_terminal, item_key, item_status


def _item(**flags):
    base = {"id": 1, "download_state": "", "download_finished": False, "download_present": False, "active": False}
    base.update(flags)
    return base


class TestItemStatus:
    """Status labels derived from the raw item flags."""

    def test_nothing_started_is_queued(self):
        assert item_status(_item()) == "queued"

    def test_queued_flag_wins(self):
        assert item_status(_item(queued=True, active=True, download_state="downloading")) == "queued"

    @pytest.mark.parametrize(
        ("state", "expected"),
        [
            ("failed (no seeds)", "failed"),
            ("stalledDL", "stalled"),
            ("metaDL", "metadl"),
            ("checkingResumeData", "checking_resume_data"),
        ],
    )
    def test_download_state_keywords(self, state, expected):
        assert item_status(_item(download_state=state, active=True)) == expected

    def test_downloading(self):
        assert item_status(_item(download_state="downloading", active=True)) == "downloading"

    def test_completed(self):
        assert item_status(_item(download_state="completed", download_finished=True, download_present=True)) == (
            "completed"
        )

    def test_seeding(self):
        flags = {"download_state": "uploading", "download_finished": True, "download_present": True, "active": True}
        assert item_status(_item(**flags)) == "seeding"

    def test_uploading_to_storage(self):
        flags = {"download_state": "uploading", "download_finished": True, "active": True}
        assert item_status(_item(**flags)) == "uploading"

    def test_inactive(self):
        assert item_status(_item(download_state="paused", download_finished=True)) == "inactive"

    @pytest.mark.parametrize(
        "flags",
        [
            {},
            {"queued": True},
            {"download_state": "error", "active": True},
            {"download_state": "stalled (no seeds)", "active": True},
            {"download_state": "downloading", "active": True},
            {"download_state": "uploading", "download_finished": True, "download_present": True, "active": True},
            {"download_state": "paused", "download_finished": True},
        ],
    )
    def test_labels_are_known(self, flags):
        assert item_status(_item(**flags)) in STATUS_LABELS

    def test_terminal_states(self):
        assert is_terminal("completed")
        assert is_terminal("failed")
        assert is_terminal("inactive")
        assert not is_terminal("downloading")
        assert not is_terminal("seeding")


class TestItemKey:
    def test_queued_items_have_their_own_id_space(self):
        assert item_key({"id": 5}) == "5"
        assert item_key({"id": 5, "queued": True}) == "queued-5"
