"""Tests for bookmark routes.

Tests cover:
- Create normalizes and validates the URL, appends to the end of the list
- List filters (archived, starred) and ordering
- Partial updates
- Another user's bookmark is reported as not found
- Creation is rate limited per user
"""

from tests.factories import (
    create_test_bookmark,
    create_test_session,
    create_test_user_with_binding,
)
from tests.helpers import login


def _sign_in(client, db_session) -> str:
    user_id, _ = create_test_user_with_binding(db_session)
    login(client, create_test_session(db_session, user_id))
    return user_id


class TestCreateBookmark:
    """POST /api/bookmarks"""

    def test_create_normalizes_url_and_defaults_title(self, client, db_session):
        _sign_in(client, db_session)

        response = client.post("/api/bookmarks", json={"url": "HTTPS://Example.com:443/a#x"})

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["url"] == "https://example.com/a"
        assert data["title"] == "example.com"
        assert data["is_starred"] is False
        assert data["read_status"] == "unread"
        assert data["display_order"] == 0

    def test_new_bookmarks_go_to_end(self, client, db_session):
        user_id = _sign_in(client, db_session)
        create_test_bookmark(db_session, user_id, display_order=4)

        response = client.post(
            "/api/bookmarks", json={"url": "https://example.org/", "title": "  Org  "}
        )

        data = response.json()["data"]
        assert data["display_order"] == 5
        assert data["title"] == "Org"

    def test_private_address_rejected(self, client, db_session):
        _sign_in(client, db_session)

        response = client.post("/api/bookmarks", json={"url": "http://127.0.0.1/admin"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_INVALID_URL"

    def test_missing_url_is_invalid_request(self, client, db_session):
        _sign_in(client, db_session)

        response = client.post("/api/bookmarks", json={"title": "no url"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_INVALID_REQUEST"

    def test_requires_session(self, client):
        response = client.post("/api/bookmarks", json={"url": "https://example.com"})
        assert response.status_code == 401

    def test_rate_limited(self, client, db_session, rate_limiters):
        _sign_in(client, db_session)
        max_requests = rate_limiters.bookmark.max_requests

        statuses = [
            client.post("/api/bookmarks", json={"url": f"https://example.com/{i}"}).status_code
            for i in range(max_requests + 1)
        ]

        assert statuses[:-1] == [201] * max_requests
        assert statuses[-1] == 429


class TestListBookmarks:
    """GET /api/bookmarks"""

    def test_list_is_ordered_and_scoped(self, client, db_session):
        user_id = _sign_in(client, db_session)
        second = create_test_bookmark(db_session, user_id, display_order=2)
        first = create_test_bookmark(db_session, user_id, display_order=1)
        other_user, _ = create_test_user_with_binding(db_session)
        create_test_bookmark(db_session, other_user)

        data = client.get("/api/bookmarks").json()["data"]

        assert [b["id"] for b in data] == [first, second]

    def test_archived_hidden_unless_requested(self, client, db_session):
        user_id = _sign_in(client, db_session)
        visible = create_test_bookmark(db_session, user_id)
        archived = create_test_bookmark(db_session, user_id, is_archived=True)

        default = client.get("/api/bookmarks").json()["data"]
        everything = client.get("/api/bookmarks", params={"include_archived": "true"}).json()

        assert [b["id"] for b in default] == [visible]
        assert {b["id"] for b in everything["data"]} == {visible, archived}

    def test_starred_filter(self, client, db_session):
        user_id = _sign_in(client, db_session)
        create_test_bookmark(db_session, user_id)
        starred = create_test_bookmark(db_session, user_id, is_starred=True)

        data = client.get("/api/bookmarks", params={"starred": "true"}).json()["data"]

        assert [b["id"] for b in data] == [starred]


class TestUpdateAndDelete:
    def test_partial_update(self, client, db_session):
        user_id = _sign_in(client, db_session)
        bookmark_id = create_test_bookmark(db_session, user_id, title="Old")

        response = client.patch(
            f"/api/bookmarks/{bookmark_id}",
            json={"is_starred": True, "read_status": "read"},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["is_starred"] is True
        assert data["read_status"] == "read"
        assert data["title"] == "Old"

    def test_negative_display_order_rejected(self, client, db_session):
        user_id = _sign_in(client, db_session)
        bookmark_id = create_test_bookmark(db_session, user_id)

        response = client.patch(f"/api/bookmarks/{bookmark_id}", json={"display_order": -1})

        assert response.status_code == 400

    def test_other_users_bookmark_is_not_found(self, client, db_session):
        _sign_in(client, db_session)
        other_user, _ = create_test_user_with_binding(db_session)
        foreign = create_test_bookmark(db_session, other_user)

        patch = client.patch(f"/api/bookmarks/{foreign}", json={"is_starred": True})
        delete = client.delete(f"/api/bookmarks/{foreign}")

        assert patch.status_code == 404
        assert patch.json()["error"]["code"] == "E_BOOKMARK_NOT_FOUND"
        assert delete.status_code == 404

    def test_delete(self, client, db_session):
        user_id = _sign_in(client, db_session)
        bookmark_id = create_test_bookmark(db_session, user_id)

        response = client.delete(f"/api/bookmarks/{bookmark_id}")

        assert response.status_code == 204
        assert client.get("/api/bookmarks").json()["data"] == []
