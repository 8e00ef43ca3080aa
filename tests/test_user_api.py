from datetime import datetime

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


def delete_account(client, headers, body=None):
    if body is None:
        return client.request("DELETE", "/api/user/account", headers=headers)
    return client.request("DELETE", "/api/user/account", json=body, headers=headers)


def login(client, identifier, password):
    return client.post("/api/auth/login", json={"identifier": identifier, "password": password})


class TestProfile:
    def test_requires_token(self, client):
        res = client.get("/api/user/profile")
        assert res.status_code == 401
        assert res.json()["message"] == "Not authorized, no token"

    def test_get_profile(self, client, make_user):
        alice = make_user()
        res = client.get("/api/user/profile", headers=alice["headers"])
        assert res.status_code == 200
        data = res.json()["data"]
        assert data["id"] == alice["user"]["id"]
        assert data["username"] == "alice"
        assert "passwordHash" not in data

    def test_update_username_and_email(self, client, make_user):
        alice = make_user()
        res = client.put(
            "/api/user/profile",
            json={"username": "alicia", "email": "  Alicia@Example.COM "},
            headers=alice["headers"],
        )
        assert res.status_code == 200
        body = res.json()
        assert body["message"] == "Profile updated successfully"
        assert body["data"]["username"] == "alicia"
        assert body["data"]["email"] == "alicia@example.com"
        assert login(client, "alicia@example.com", alice["password"]).status_code == 200

    def test_blank_fields_are_ignored(self, client, make_user):
        alice = make_user()
        res = client.put("/api/user/profile", json={"username": "", "email": "  "}, headers=alice["headers"])
        assert res.status_code == 200
        assert res.json()["data"]["username"] == "alice"
        assert res.json()["data"]["email"] == "alice@example.com"

    def test_keeping_own_values_is_not_a_conflict(self, client, make_user):
        alice = make_user()
        res = client.put(
            "/api/user/profile",
            json={"username": "alice", "email": "alice@example.com"},
            headers=alice["headers"],
        )
        assert res.status_code == 200

    def test_conflicts_with_other_user(self, client, make_user):
        make_user("bob")
        alice = make_user()
        taken_name = client.put("/api/user/profile", json={"username": "bob"}, headers=alice["headers"])
        assert taken_name.status_code == 409
        assert taken_name.json()["message"] == "Username already exists"

        taken_email = client.put("/api/user/profile", json={"email": "BOB@example.com"}, headers=alice["headers"])
        assert taken_email.status_code == 409
        assert taken_email.json()["message"] == "Email already exists"

    def test_invalid_email(self, client, make_user):
        alice = make_user()
        res = client.put("/api/user/profile", json={"email": "nope"}, headers=alice["headers"])
        assert res.status_code == 400


class TestChangePassword:
    URL = "/api/user/change-password"

    def body(self, current="secret123", new="newpass456", confirm=None):
        return {
            "currentPassword": current,
            "newPassword": new,
            "confirmPassword": new if confirm is None else confirm,
        }

    def test_success_switches_password(self, client, make_user):
        alice = make_user()
        res = client.put(self.URL, json=self.body(), headers=alice["headers"])
        assert res.status_code == 200
        assert res.json() == {"success": True, "message": "Password changed successfully"}
        assert login(client, "alice", "secret123").status_code == 401
        assert login(client, "alice", "newpass456").status_code == 200

    def test_missing_fields(self, client, make_user):
        alice = make_user()
        res = client.put(self.URL, json={"currentPassword": "secret123"}, headers=alice["headers"])
        assert res.status_code == 400
        assert res.json()["message"] == "Please provide current password, new password, and confirm password"

    def test_mismatched_confirmation(self, client, make_user):
        alice = make_user()
        res = client.put(self.URL, json=self.body(confirm="different1"), headers=alice["headers"])
        assert res.status_code == 400
        assert res.json()["message"] == "New password and confirm password do not match"

    def test_short_new_password(self, client, make_user):
        alice = make_user()
        res = client.put(self.URL, json=self.body(new="123"), headers=alice["headers"])
        assert res.status_code == 400
        assert res.json()["message"] == "Password must be at least 6 characters long"

    def test_wrong_current_password(self, client, make_user):
        alice = make_user()
        res = client.put(self.URL, json=self.body(current="wrong-one"), headers=alice["headers"])
        assert res.status_code == 400
        assert res.json()["message"] == "Current password is incorrect"
        assert login(client, "alice", "secret123").status_code == 200


class TestUserStats:
    def test_stats_with_todos(self, client, make_user):
        alice = make_user()
        ids = []
        for i, priority in enumerate(["high", "high", "medium", "low", "low"]):
            res = client.post("/api/todos", json={"title": f"t{i}", "priority": priority}, headers=alice["headers"])
            ids.append(res.json()["data"]["id"])
        for todo_id in ids[:3]:
            client.patch(f"/api/todos/{todo_id}/complete", headers=alice["headers"])

        res = client.get("/api/user/stats", headers=alice["headers"])
        assert res.status_code == 200
        data = res.json()["data"]
        assert data["user"]["username"] == "alice"
        assert data["user"]["email"] == "alice@example.com"
        assert data["user"]["daysSinceRegistration"] == 0
        member_since = datetime.fromisoformat(data["user"]["memberSince"].replace("Z", "+00:00"))
        created = datetime.fromisoformat(alice["user"]["createdAt"].replace("Z", "+00:00"))
        assert member_since == created
        assert data["todoStats"] == {
            "totalTodos": 5,
            "completedTodos": 3,
            "pendingTodos": 2,
            "highPriorityTodos": 2,
            "mediumPriorityTodos": 1,
            "lowPriorityTodos": 2,
            "completionRate": 60,
        }

    def test_stats_without_todos(self, client, make_user):
        alice = make_user()
        stats = client.get("/api/user/stats", headers=alice["headers"]).json()["data"]["todoStats"]
        assert stats["totalTodos"] == 0
        assert stats["completionRate"] == 0

    def test_completion_rate_rounds_half_up(self, client, make_user):
        alice = make_user()
        ids = [
            client.post("/api/todos", json={"title": f"t{i}"}, headers=alice["headers"]).json()["data"]["id"]
            for i in range(3)
        ]
        client.patch(f"/api/todos/{ids[0]}/complete", headers=alice["headers"])
        stats = client.get("/api/user/stats", headers=alice["headers"]).json()["data"]["todoStats"]
        # 1/3 -> 33.33 -> 33
        assert stats["completionRate"] == 33

        client.patch(f"/api/todos/{ids[1]}/complete", headers=alice["headers"])
        stats = client.get("/api/user/stats", headers=alice["headers"]).json()["data"]["todoStats"]
        # 2/3 -> 66.67 -> 67
        assert stats["completionRate"] == 67


class TestDeleteAccount:
    def test_requires_password(self, client, make_user):
        alice = make_user()
        for res in (delete_account(client, alice["headers"]), delete_account(client, alice["headers"], {})):
            assert res.status_code == 400
            assert res.json()["message"] == "Please provide your password to confirm account deletion"

    def test_wrong_password(self, client, make_user):
        alice = make_user()
        res = delete_account(client, alice["headers"], {"password": "not-it"})
        assert res.status_code == 400
        assert res.json()["message"] == "Incorrect password"
        assert client.get("/api/user/profile", headers=alice["headers"]).status_code == 200

    def test_deletes_account_and_todos(self, client, make_user):
        alice = make_user()
        bob = make_user("bob")
        todo_id = client.post("/api/todos", json={"title": "mine"}, headers=alice["headers"]).json()["data"]["id"]
        bobs = client.post("/api/todos", json={"title": "bob's"}, headers=bob["headers"]).json()["data"]["id"]

        res = delete_account(client, alice["headers"], {"password": alice["password"]})
        assert res.status_code == 200
        assert res.json() == {"success": True, "message": "Account deleted successfully"}

        # the old token no longer resolves to a user
        gone = client.get("/api/user/profile", headers=alice["headers"])
        assert gone.status_code == 401
        assert gone.json()["message"] == "Not authorized, user not found"
        assert login(client, "alice", alice["password"]).status_code == 401

        assert client.app.state.todo_repo.list(alice["user"]["id"]) == ([], 0)
        assert client.app.state.todo_repo.get(alice["user"]["id"], todo_id) is None
        assert client.get(f"/api/todos/{bobs}", headers=bob["headers"]).status_code == 200

    def test_frees_username_and_email(self, client, make_user):
        alice = make_user()
        delete_account(client, alice["headers"], {"password": alice["password"]})
        again = make_user()
        assert again["user"]["username"] == "alice"

    def test_removes_stored_profile_image(self, client, make_user):
        alice = make_user()
        storage = client.app.state.image_storage
        res = client.put(
            "/api/user/profile-image",
            files={"profileImage": ("me.png", PNG_BYTES, "image/png")},
            headers=alice["headers"],
        )
        stored = storage.resolve(res.json()["data"]["profileImage"])
        assert stored.exists()

        assert delete_account(client, alice["headers"], {"password": alice["password"]}).status_code == 200
        assert not stored.exists()
        assert list((storage.root / "profiles").iterdir()) == []

    def test_todo_cleanup_failure_does_not_block_deletion(self, client, make_user, monkeypatch):
        alice = make_user()
        client.post("/api/todos", json={"title": "mine"}, headers=alice["headers"])

        def fail(user_id):
            raise RuntimeError("todo store unavailable")

        monkeypatch.setattr(client.app.state.todo_repo, "delete_for_user", fail)

        res = delete_account(client, alice["headers"], {"password": alice["password"]})
        assert res.status_code == 200
        assert res.json()["message"] == "Account deleted successfully"
        assert client.app.state.user_repo.get(alice["user"]["id"]) is None
        assert login(client, "alice", alice["password"]).status_code == 401
