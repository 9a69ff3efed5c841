"""Integration tests for org, member and invite administration.

Tests the end-to-end flows:
- Super-admin creates an org, provisions an admin, admin invites a member
- Disabling an org cuts off live sessions; enabling needs a fresh login
- Deleting and restoring an org
- Disabling one membership only affects that member
- Role gates on super-admin and org-admin routes
"""

import pytest
from fastapi.testclient import TestClient

from conftest import PASSWORD
from tenantgate import app as app_module


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def login(client, email, password=PASSWORD, org_id=None):
    body = {"email": email, "password": password}
    if org_id:
        body["org_id"] = org_id
    response = client.post("/auth/login", json=body)
    assert response.status_code == 200, response.text
    data = response.json()["data"]
    return {"Authorization": f"Bearer {data['access_token']}"}, data


@pytest.fixture
def root(client, seed):
    seed.user("root@example.com", super_admin=True)
    headers, _ = login(client, "root@example.com")
    return headers


def create_org(client, root, name="Acme"):
    response = client.post("/orgs", json={"name": name}, headers=root)
    assert response.status_code == 201, response.text
    return response.json()["data"]


def invite_and_accept(client, admin, email, role=None):
    body = {"email": email}
    if role:
        body["role"] = role
    created = client.post("/users/invite", json=body, headers=admin)
    assert created.status_code == 201, created.text
    token = created.json()["data"]["invite_url"].rsplit("/", 1)[-1]
    accepted = client.post(f"/users/invite/{token}/accept", json={"password": PASSWORD})
    assert accepted.status_code == 200, accepted.text
    return token, accepted.json()["data"]


@pytest.fixture
def tenant(client, root):
    """An org with a claimed admin account."""
    org = create_org(client, root)
    added = client.post(
        "/users/super/admins/add",
        json={"email": "boss@example.com", "org_id": org["id"]},
        headers=root,
    )
    assert added.status_code == 200, added.text
    assert added.json()["data"]["created_user"] is True
    boss_id = added.json()["data"]["membership"]["user_id"]
    reset = client.post(
        f"/users/super/members/{boss_id}/password",
        json={"password": PASSWORD},
        headers=root,
    )
    assert reset.status_code == 200, reset.text
    admin, _ = login(client, "boss@example.com")
    return org, admin


class TestOrgAdministration:
    def test_create_and_list_orgs(self, client, root):
        org = create_org(client, root, "Acme Corp")
        assert org["slug"] == "acme-corp"
        assert org["status"] == "ACTIVE"

        listed = client.get("/orgs", headers=root).json()["data"]["items"]
        assert [o["id"] for o in listed] == [org["id"]]

    def test_duplicate_org_conflicts(self, client, root):
        create_org(client, root)
        response = client.post("/orgs", json={"name": "Acme"}, headers=root)
        assert response.status_code == 409

    def test_org_routes_require_super_admin(self, client, tenant):
        org, admin = tenant
        response = client.post(f"/orgs/{org['id']}/disable", headers=admin)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"
        assert TestClient(app_module.app).get("/orgs").status_code == 401

    def test_unknown_org_is_404(self, client, root):
        response = client.post("/orgs/missing/disable", headers=root)
        assert response.status_code == 404


class TestInviteFlow:
    def test_admin_invites_member_end_to_end(self, client, tenant):
        org, admin = tenant

        token, accepted = invite_and_accept(client, admin, "alice@example.com")
        assert accepted["org_id"] == org["id"]
        assert accepted["role"] == "USER"
        assert accepted["created_user"] is True

        alice, data = login(client, "alice@example.com")
        assert data["org_id"] == org["id"]
        me = client.get("/auth/me", headers=alice).json()["data"]
        assert me["role"] == "USER"

        members = client.get("/users/members", headers=admin).json()["data"]["items"]
        assert sorted(m["email"] for m in members) == ["alice@example.com", "boss@example.com"]

        replay = client.post(f"/users/invite/{token}/accept", json={"password": PASSWORD})
        assert replay.status_code == 404
        assert replay.json()["error"]["code"] == "invalid_invite"

    def test_invite_details_are_public(self, client, tenant):
        org, admin = tenant
        created = client.post("/users/invite", json={"email": "a@example.com"}, headers=admin)
        token = created.json()["data"]["invite_url"].rsplit("/", 1)[-1]

        details = client.get(f"/users/invite/{token}").json()["data"]
        assert details == {
            "email": "a@example.com",
            "org_id": org["id"],
            "org_name": "Acme",
            "role": "USER",
        }

    def test_pending_invites_listed_for_admin(self, client, tenant):
        _, admin = tenant
        client.post("/users/invite", json={"email": "a@example.com"}, headers=admin)
        client.post("/users/invite", json={"email": "a@example.com", "role": "ADMIN"}, headers=admin)

        items = client.get("/users/invites", headers=admin).json()["data"]["items"]
        assert len(items) == 1
        assert items[0]["role"] == "ADMIN"

    def test_regular_member_cannot_invite(self, client, tenant):
        _, admin = tenant
        invite_and_accept(client, admin, "alice@example.com")
        alice, _ = login(client, "alice@example.com")

        response = client.post("/users/invite", json={"email": "x@example.com"}, headers=alice)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"


class TestOrgRevocation:
    def test_disable_cuts_off_live_sessions(self, client, root, tenant):
        org, admin = tenant
        invite_and_accept(client, admin, "alice@example.com")
        alice, data = login(client, "alice@example.com")

        disabled = client.post(f"/orgs/{org['id']}/disable", headers=root)
        assert disabled.status_code == 200
        assert disabled.json()["data"]["status"] == "DISABLED"

        me = client.get("/auth/me", headers=alice)
        assert me.status_code == 403
        assert me.json()["error"]["code"] == "org_revoked"
        refresh = client.post("/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert refresh.status_code == 401

        relogin = client.post(
            "/auth/login", json={"email": "alice@example.com", "password": PASSWORD}
        )
        assert relogin.status_code == 403
        assert relogin.json()["error"]["code"] == "org_revoked"

    def test_enable_requires_fresh_login(self, client, root, tenant):
        org, admin = tenant
        invite_and_accept(client, admin, "alice@example.com")
        old_alice, _ = login(client, "alice@example.com")
        disabled_epoch = client.post(f"/orgs/{org['id']}/disable", headers=root).json()["data"][
            "auth_epoch"
        ]

        enabled = client.post(f"/orgs/{org['id']}/enable", headers=root).json()["data"]
        assert enabled["status"] == "ACTIVE"
        assert enabled["auth_epoch"] > disabled_epoch

        assert client.get("/auth/me", headers=old_alice).status_code == 403
        new_alice, _ = login(client, "alice@example.com")
        assert client.get("/auth/me", headers=new_alice).status_code == 200

    def test_delete_and_undelete(self, client, root, tenant):
        org, admin = tenant
        deleted = client.delete(f"/orgs/{org['id']}", headers=root)
        assert deleted.status_code == 200
        assert deleted.json()["data"]["status"] == "DELETED"
        assert client.get("/users/members", headers=admin).status_code == 403

        again = client.delete(f"/orgs/{org['id']}", headers=root)
        assert again.status_code == 400

        restored = client.post(f"/orgs/{org['id']}/undelete", headers=root).json()["data"]
        assert restored["status"] == "DISABLED"
        members = client.get(f"/users/super/members/{org['id']}", headers=root).json()["data"]
        assert members["items"] == []

    def test_undelete_requires_deleted_org(self, client, root):
        org = create_org(client, root)
        response = client.post(f"/orgs/{org['id']}/undelete", headers=root)
        assert response.status_code == 400


class TestMemberAdministration:
    def test_disabled_member_keeps_refreshing_but_loses_access(self, client, root, tenant):
        """Disabling a membership never touches the org or other members."""
        org, admin = tenant
        _, carol_invite = invite_and_accept(client, admin, "carol@example.com", "ADMIN")
        carol, carol_data = login(client, "carol@example.com")
        epoch = client.get("/orgs", headers=root).json()["data"]["items"][0]["auth_epoch"]

        toggled = client.post(
            f"/users/members/{carol_invite['user_id']}/disable",
            json={"disabled": True},
            headers=admin,
        )
        assert toggled.status_code == 200
        assert toggled.json()["data"]["disabled"] is True

        refreshed = client.post(
            "/auth/refresh", json={"refresh_token": carol_data["refresh_token"]}
        )
        assert refreshed.status_code == 200
        carol = {"Authorization": f"Bearer {refreshed.json()['data']['access_token']}"}

        blocked = client.get("/users/members", headers=carol)
        assert blocked.status_code == 403
        assert blocked.json()["error"]["code"] == "membership_disabled"
        assert client.get("/users/members", headers=admin).status_code == 200

        org_now = client.get("/orgs", headers=root).json()["data"]["items"][0]
        assert org_now["status"] == "ACTIVE"
        assert org_now["auth_epoch"] == epoch

        relogin = client.post(
            "/auth/login", json={"email": "carol@example.com", "password": PASSWORD}
        )
        assert relogin.status_code == 403
        assert relogin.json()["error"]["code"] == "membership_disabled"

    def test_update_member_role(self, client, tenant):
        _, admin = tenant
        _, alice = invite_and_accept(client, admin, "alice@example.com")

        response = client.post(
            f"/users/members/{alice['user_id']}/role", json={"role": "ADMIN"}, headers=admin
        )
        assert response.status_code == 200
        assert response.json()["data"]["role"] == "ADMIN"

        bad = client.post(
            f"/users/members/{alice['user_id']}/role", json={"role": "OWNER"}, headers=admin
        )
        assert bad.status_code == 400


class TestSuperAdminTools:
    def test_list_and_remove_admins(self, client, root, tenant):
        org, _ = tenant
        admins = client.get("/users/super/admins", headers=root).json()["data"]["items"]
        assert [(a["email"], a["org_name"]) for a in admins] == [("boss@example.com", "Acme")]

        removed = client.post(
            "/users/super/admins/remove",
            json={"email": "boss@example.com", "org_id": org["id"]},
            headers=root,
        )
        assert removed.status_code == 200
        assert removed.json()["data"]["role"] == "USER"
        assert client.get("/users/super/admins", headers=root).json()["data"]["items"] == []

    def test_super_admin_cannot_be_org_admin(self, client, root):
        org = create_org(client, root)
        response = client.post(
            "/users/super/admins/add",
            json={"email": "root@example.com", "org_id": org["id"]},
            headers=root,
        )
        assert response.status_code == 400

    def test_org_admin_cannot_use_super_tools(self, client, tenant):
        _, admin = tenant
        assert client.get("/users/super/admins", headers=admin).status_code == 403
