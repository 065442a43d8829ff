"""HTTP surface: auth, error mapping and the chat flow."""
import pytest

from tests.conftest import auth_headers

pytestmark = pytest.mark.asyncio

API = "/api/v1"


async def post_message(client, chat_id: int, user_id: int, text: str) -> dict:
    response = await client.post(
        f"{API}/chats/{chat_id}/messages",
        json={"text": text},
        headers=auth_headers(user_id),
    )
    assert response.status_code == 201, response.text
    return response.json()


class TestAuth:
    async def test_missing_identity_header(self, client, seed):
        response = await client.get(f"{API}/chats/{seed.project_chat}/messages")
        assert response.status_code == 401

    async def test_unknown_user(self, client, seed):
        response = await client.get(
            f"{API}/chats/{seed.project_chat}/messages", headers=auth_headers(9999)
        )
        assert response.status_code == 401

    async def test_malformed_header(self, client, seed):
        response = await client.get(
            f"{API}/notifications", headers={"X-User-ID": "alice"}
        )
        assert response.status_code == 401


class TestChatFlow:
    async def test_send_deliver_read(self, client, seed):
        message = await post_message(client, seed.project_chat, seed.alice, "Standup moved")
        assert message["author_id"] == seed.alice
        assert message["is_deleted"] is False

        response = await client.get(
            f"{API}/chats/{seed.project_chat}/unread-count", headers=auth_headers(seed.bob)
        )
        assert response.json() == {"chat_id": seed.project_chat, "unread_count": 1}

        response = await client.post(
            f"{API}/messages/{message['id']}/delivered", headers=auth_headers(seed.bob)
        )
        assert response.status_code == 200
        assert response.json()["delivered_at"] is not None
        assert response.json()["read_at"] is None

        response = await client.post(
            f"{API}/messages/{message['id']}/read", headers=auth_headers(seed.bob)
        )
        assert response.status_code == 200
        assert response.json()["read_at"] is not None

        response = await client.get(f"{API}/chats/unread", headers=auth_headers(seed.bob))
        assert response.json() == []

        response = await client.get(
            f"{API}/messages/{message['id']}/status", headers=auth_headers(seed.alice)
        )
        statuses = response.json()
        assert [s["user_id"] for s in statuses] == [seed.carol, seed.bob]
        assert statuses[1]["display_name"] == "bob"

    async def test_history_and_paging(self, client, seed):
        ids = [
            (await post_message(client, seed.project_chat, seed.alice, text))["id"]
            for text in ("one", "two", "three")
        ]

        response = await client.get(
            f"{API}/chats/{seed.project_chat}/messages",
            params={"before_id": ids[2], "limit": 1},
            headers=auth_headers(seed.carol),
        )
        assert [m["id"] for m in response.json()] == [ids[1]]

    async def test_mark_chat_read(self, client, seed):
        await post_message(client, seed.company_chat, seed.alice, "one")
        await post_message(client, seed.company_chat, seed.alice, "two")

        response = await client.post(
            f"{API}/chats/{seed.company_chat}/read", headers=auth_headers(seed.carol)
        )
        assert response.json() == {"chat_id": seed.company_chat, "marked_count": 2}

    async def test_author_deletes_message(self, client, seed):
        message = await post_message(client, seed.project_chat, seed.alice, "typo")

        response = await client.delete(
            f"{API}/messages/{message['id']}", headers=auth_headers(seed.bob)
        )
        assert response.status_code == 403

        response = await client.delete(
            f"{API}/messages/{message['id']}", headers=auth_headers(seed.alice)
        )
        assert response.status_code == 200
        assert response.json()["is_deleted"] is True


class TestErrorMapping:
    async def test_outsider_is_forbidden(self, client, seed):
        response = await client.post(
            f"{API}/chats/{seed.project_chat}/messages",
            json={"text": "let me in"},
            headers=auth_headers(seed.dave),
        )
        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN"

    async def test_unknown_chat(self, client, seed):
        response = await client.get(f"{API}/chats/9999/messages", headers=auth_headers(seed.alice))
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    async def test_read_before_delivery(self, client, seed):
        message = await post_message(client, seed.project_chat, seed.alice, "ping")

        response = await client.post(
            f"{API}/messages/{message['id']}/read", headers=auth_headers(seed.bob)
        )
        assert response.status_code == 422
        assert response.json()["code"] == "NOT_DELIVERED"

    async def test_empty_message(self, client, seed):
        response = await client.post(
            f"{API}/chats/{seed.project_chat}/messages",
            json={"text": ""},
            headers=auth_headers(seed.alice),
        )
        assert response.status_code == 422
        assert response.json()["code"] == "EMPTY_MESSAGE"


class TestClusterAdminEndpoints:
    async def test_admin_hands_over(self, client, seed):
        response = await client.put(
            f"{API}/clusters/{seed.cluster}/admin",
            json={"user_id": seed.bob},
            headers=auth_headers(seed.alice),
        )
        assert response.status_code == 200
        assert response.json()["user_id"] == seed.bob
        assert response.json()["role"] == "admin"

        # alice is no longer admin
        response = await client.put(
            f"{API}/clusters/{seed.cluster}/admin",
            json={"user_id": seed.alice},
            headers=auth_headers(seed.alice),
        )
        assert response.status_code == 403

    async def test_stale_expected_admin_conflicts(self, client, seed):
        response = await client.put(
            f"{API}/clusters/{seed.cluster}/admin",
            json={"user_id": seed.bob, "expected_admin_id": seed.carol},
            headers=auth_headers(seed.alice),
        )
        assert response.status_code == 409
        assert response.json()["code"] == "CONCURRENT_MODIFICATION"

    async def test_admin_cannot_leave_while_others_remain(self, client, seed):
        response = await client.delete(
            f"{API}/clusters/{seed.cluster}/members/{seed.alice}",
            headers=auth_headers(seed.alice),
        )
        assert response.status_code == 422
        assert response.json()["code"] == "LAST_ADMIN"

    async def test_member_may_leave(self, client, seed):
        response = await client.delete(
            f"{API}/clusters/{seed.cluster}/members/{seed.carol}",
            headers=auth_headers(seed.carol),
        )
        assert response.status_code == 204

    async def test_admin_removes_another_member(self, client, seed):
        response = await client.delete(
            f"{API}/clusters/{seed.cluster}/members/{seed.carol}",
            headers=auth_headers(seed.bob),
        )
        assert response.status_code == 403

        response = await client.delete(
            f"{API}/clusters/{seed.cluster}/members/{seed.carol}",
            headers=auth_headers(seed.alice),
        )
        assert response.status_code == 204

    async def test_project_lead_requires_cluster_admin(self, client, seed):
        response = await client.put(
            f"{API}/projects/{seed.project}/lead",
            json={"user_id": seed.carol},
            headers=auth_headers(seed.bob),
        )
        assert response.status_code == 403

        response = await client.put(
            f"{API}/projects/{seed.project}/lead",
            json={"user_id": seed.carol},
            headers=auth_headers(seed.alice),
        )
        assert response.status_code == 200
        assert response.json()["role"] == "lead"


class TestNotificationEndpoints:
    async def test_mention_feed(self, client, seed):
        await post_message(client, seed.project_chat, seed.alice, "@carol can you review?")

        response = await client.get(f"{API}/notifications", headers=auth_headers(seed.carol))
        body = response.json()
        assert body["unread_count"] == 1
        [item] = body["items"]
        assert item["notification_type"] == "mention"

        response = await client.post(
            f"{API}/notifications/{item['id']}/read", headers=auth_headers(seed.bob)
        )
        assert response.status_code == 403

        response = await client.post(
            f"{API}/notifications/{item['id']}/read", headers=auth_headers(seed.carol)
        )
        assert response.json()["is_read"] is True

    async def test_task_assignment(self, client, seed):
        response = await client.post(
            f"{API}/tasks/{seed.task}/assignments",
            json={"user_ids": [seed.bob, seed.carol]},
            headers=auth_headers(seed.alice),
        )
        assert response.status_code == 201
        assert {a["user_id"] for a in response.json()} == {seed.bob, seed.carol}

        response = await client.post(f"{API}/notifications/read-all", headers=auth_headers(seed.bob))
        assert response.json() == {"marked_count": 1}

    async def test_outsider_cannot_assign(self, client, seed):
        response = await client.post(
            f"{API}/tasks/{seed.task}/assignments",
            json={"user_ids": [seed.bob]},
            headers=auth_headers(seed.dave),
        )
        assert response.status_code == 403


async def test_health(client):
    response = await client.get(f"{API}/health")
    assert response.status_code == 200
    assert response.json()["database"] == "healthy"
