import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError

from conftest import creator, draft
from database import OWNER_LESSONS, PUBLIC_LESSONS
from errors import BadRequest, Internal, NotFound


def both_copies(db, lesson_id):
    return db[PUBLIC_LESSONS].find_one({"_id": lesson_id}), db[OWNER_LESSONS].find_one({"_id": lesson_id})


def test_create_writes_identical_copies(db, lessons):
    lesson = lessons.create(draft(), creator())

    public, owned = both_copies(db, lesson["_id"])
    assert public is not None
    assert public == owned
    assert public["creator"]["email"] == "alice@example.com"
    assert public["likesCount"] == 0 and public["favoritesCount"] == 0
    assert public["comments"] == [] and public["isReported"] is False
    assert lessons.find_divergent() == []


def test_create_ignores_counters_in_draft(lessons):
    lesson = lessons.create(draft(likesCount=99, isReported=True), creator())
    assert lesson["likesCount"] == 0
    assert lesson["isReported"] is False


def test_create_requires_title_and_description(lessons):
    with pytest.raises(BadRequest) as exc:
        lessons.create(draft(title=""), creator())
    assert exc.value.detail == "Title & Full Description required"


def test_create_rejects_unknown_visibility(db, lessons):
    with pytest.raises(BadRequest):
        lessons.create(draft(visibility="friends"), creator())
    assert db[PUBLIC_LESSONS].count_documents({}) == 0


def test_failed_owner_insert_removes_public_copy(db, lessons, monkeypatch):
    def boom(doc):
        raise PyMongoError("owner index down")

    monkeypatch.setattr(lessons.owned, "insert_one", boom)
    with pytest.raises(Internal):
        lessons.create(draft(), creator())
    assert db[PUBLIC_LESSONS].count_documents({}) == 0
    assert db[OWNER_LESSONS].count_documents({}) == 0


def test_failed_compensation_is_reported(db, lessons, monkeypatch):
    def boom(*args, **kwargs):
        raise PyMongoError("down")

    monkeypatch.setattr(lessons.owned, "insert_one", boom)
    monkeypatch.setattr(lessons.public, "delete_one", boom)
    with pytest.raises(Internal) as exc:
        lessons.create(draft(), creator())
    assert exc.value.detail == "Lesson storage is inconsistent"
    assert len(lessons.find_divergent()) == 1


def test_update_applies_patch_to_both_copies(db, lessons):
    lesson = lessons.create(draft(), creator())
    lessons.update(lesson["_id"], {"title": "Kindness", "visibility": "private"})

    public, owned = both_copies(db, lesson["_id"])
    assert public["title"] == owned["title"] == "Kindness"
    assert public["visibility"] == owned["visibility"] == "private"
    assert lessons.find_divergent() == []


@pytest.mark.parametrize("patch", [
    {"likesCount": 100},
    {"creator": {"name": "Mallory"}},
    {"favoritedBy": []},
])
def test_update_rejects_fields_outside_allow_list(db, lessons, patch):
    lesson = lessons.create(draft(), creator())
    with pytest.raises(BadRequest):
        lessons.update(lesson["_id"], patch)
    assert both_copies(db, lesson["_id"])[0]["likesCount"] == 0


def test_update_unknown_lesson(lessons):
    with pytest.raises(NotFound):
        lessons.update(ObjectId(), {"title": "x"})


def test_set_access_level_rejects_unknown_value(db, lessons):
    lesson = lessons.create(draft(), creator())
    with pytest.raises(BadRequest):
        lessons.set_access_level(lesson["_id"], "gold")
    assert both_copies(db, lesson["_id"])[0]["accessLevel"] == "free"


def test_set_access_level_premium_reaches_both_copies(db, lessons):
    lesson = lessons.create(draft(), creator())
    lessons.set_access_level(lesson["_id"], "premium")
    public, owned = both_copies(db, lesson["_id"])
    assert public["accessLevel"] == owned["accessLevel"] == "premium"


def test_delete_removes_both_copies(db, lessons):
    lesson = lessons.create(draft(), creator())
    lessons.delete(lesson["_id"])
    assert both_copies(db, lesson["_id"]) == (None, None)
    with pytest.raises(NotFound):
        lessons.delete(lesson["_id"])


def test_toggle_favorite_moves_counter_and_marker(db, lessons):
    lesson = lessons.create(draft(), creator())

    first = lessons.toggle_favorite(lesson["_id"], "bob@example.com")
    assert first == {"favorited": True, "favoritesCount": 1}
    public, owned = both_copies(db, lesson["_id"])
    assert public["favoritedBy"] == [{"email": "bob@example.com"}]
    assert public == owned

    second = lessons.toggle_favorite(lesson["_id"], "bob@example.com")
    assert second == {"favorited": False, "favoritesCount": 0}
    assert lessons.find_divergent() == []


def test_likes_from_two_readers(lessons):
    lesson = lessons.create(draft(), creator())
    lessons.toggle_like(lesson["_id"], "bob@example.com")
    result = lessons.toggle_like(lesson["_id"], "carol@example.com")
    assert result == {"liked": True, "likesCount": 2}
    assert lessons.find_divergent() == []


def test_comment_and_report(db, lessons):
    lesson = lessons.create(draft(), creator())
    author = {"name": "Bob", "email": "bob@example.com", "photoURL": ""}

    comment = lessons.add_comment(lesson["_id"], author, "  Loved it  ")
    assert comment["text"] == "Loved it"
    lessons.report(lesson["_id"])

    public, owned = both_copies(db, lesson["_id"])
    assert public == owned
    assert public["isReported"] is True
    assert [c["authorEmail"] for c in public["comments"]] == ["bob@example.com"]

    lessons.clear_report(lesson["_id"])
    assert both_copies(db, lesson["_id"])[1]["isReported"] is False


def test_empty_comment_rejected(lessons):
    lesson = lessons.create(draft(), creator())
    with pytest.raises(BadRequest):
        lessons.add_comment(lesson["_id"], {"email": "bob@example.com"}, "   ")


def test_find_divergent_spots_drifted_copy(db, lessons):
    lesson = lessons.create(draft(), creator())
    db[OWNER_LESSONS].update_one({"_id": lesson["_id"]}, {"$set": {"title": "drifted"}})
    assert lessons.find_divergent() == [str(lesson["_id"])]


def test_delete_by_creator_keeps_other_creators(db, lessons):
    lessons.create(draft(), creator())
    lessons.create(draft(title="Second"), creator())
    kept = lessons.create(draft(), creator(name="Bob", email="bob@example.com", uid="uid-bob"))

    assert lessons.delete_by_creator("alice@example.com") == 2
    for name in (PUBLIC_LESSONS, OWNER_LESSONS):
        assert [d["_id"] for d in db[name].find()] == [kept["_id"]]


def test_interleaved_toggles_converge(db, lessons, monkeypatch):
    lesson = lessons.create(draft(), creator())
    replace_owner = lessons.owned.replace_one
    calls = []

    def second_reader_slips_in(query, doc):
        calls.append(doc["revision"])
        if len(calls) == 1:
            # Carol's like lands on both copies between Bob's two writes.
            lessons.toggle_like(lesson["_id"], "carol@example.com")
        return replace_owner(query, doc)

    monkeypatch.setattr(lessons.owned, "replace_one", second_reader_slips_in)
    result = lessons.toggle_like(lesson["_id"], "bob@example.com")

    assert result == {"liked": True, "likesCount": 2}
    assert calls == [1, 2]
    public, owned = both_copies(db, lesson["_id"])
    assert owned["likesCount"] == 2
    assert owned["revision"] == 2
    assert lessons.find_divergent() == []


def test_stale_owner_write_is_skipped(db, lessons):
    lesson = lessons.create(draft(), creator())
    lessons.update(lesson["_id"], {"title": "First"})
    stale = db[PUBLIC_LESSONS].find_one({"_id": lesson["_id"]})
    lessons.update(lesson["_id"], {"title": "Second"})

    lessons._sync_owner_copy(stale)

    assert both_copies(db, lesson["_id"])[1]["title"] == "Second"
    assert lessons.find_divergent() == []


def test_missing_owner_copy_is_reported(db, lessons):
    lesson = lessons.create(draft(), creator())
    db[OWNER_LESSONS].delete_one({"_id": lesson["_id"]})
    with pytest.raises(Internal) as exc:
        lessons.report(lesson["_id"])
    assert exc.value.detail == "Lesson storage is inconsistent"
