import main
import notifications


def _create_issue(client, user, payload):
    resp = client.post("/issues", json=payload, headers=user["headers"])
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["success"] is True


def test_register_login_me(client):
    resp = client.post("/auth/register", json={"name": "Dana", "email": "dana@example.com", "password": "secret123"})
    assert resp.status_code == 201, resp.text
    assert resp.json()["user"]["isAdmin"] is False

    resp = client.post("/auth/login", json={"email": "dana@example.com", "password": "secret123"})
    assert resp.status_code == 200
    token = resp.json()["token"]

    me = client.get("/me", headers={"Authorization": f"Bearer {token}"}).json()
    assert me["data"]["name"] == "Dana"

    dup = client.post("/auth/register", json={"name": "Dana", "email": "dana@example.com", "password": "secret123"})
    assert dup.status_code == 400
    assert dup.json()["success"] is False


def test_bad_credentials_and_missing_token(client, issue_payload):
    resp = client.post("/auth/login", json={"email": "nobody@example.com", "password": "nope"})
    assert resp.status_code == 401
    assert resp.json() == {"success": False, "message": "Invalid credentials"}

    resp = client.post("/issues", json=issue_payload())
    assert resp.status_code == 401


def test_deactivated_user_is_rejected(client, make_user):
    user = make_user(is_active=False)
    resp = client.get("/me", headers=user["headers"])
    assert resp.status_code == 403


def test_water_issue_scenario(client, make_user, issue_payload):
    reporter, alice, bob = make_user("Reporter"), make_user("Alice"), make_user("Bob")
    admin = make_user("Admin", is_admin=True)

    issue = _create_issue(client, reporter, issue_payload(category="water", priority="high"))
    assert issue["reportedBy"]["name"] == "Reporter"
    assert issue["status"] == "pending"

    for voter in (alice, bob):
        resp = client.post(f"/issues/{issue['id']}/vote", json={"voteType": "up"}, headers=voter["headers"])
        assert resp.status_code == 200, resp.text

    detail = client.get(f"/issues/{issue['id']}").json()["data"]
    assert detail["issue"]["upvotes"] == 2
    assert detail["issue"]["downvotes"] == 0

    resp = client.put(
        f"/issues/{issue['id']}/status",
        json={"status": "resolved", "comment": "Fixed the pipe"},
        headers=admin["headers"],
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["data"]["status"] == "resolved"
    assert body["data"]["resolvedAt"] is not None
    assert body["comment"]["isOfficial"] is True

    listed = client.get(f"/comments/issue/{issue['id']}").json()
    assert listed["count"] == 1
    assert listed["data"][0]["content"] == "Fixed the pipe"
    assert listed["data"][0]["isOfficial"] is True
    assert listed["data"][0]["author"]["name"] == "Admin"


def test_duplicate_vote_is_rejected_and_flip_allowed(client, make_user, issue_payload):
    reporter, voter = make_user(), make_user()
    issue = _create_issue(client, reporter, issue_payload())
    url = f"/issues/{issue['id']}/vote"

    client.post(url, json={"voteType": "up"}, headers=voter["headers"])
    dup = client.post(url, json={"voteType": "up"}, headers=voter["headers"])
    assert dup.status_code == 409
    assert dup.json()["success"] is False

    flip = client.post(url, json={"voteType": "down"}, headers=voter["headers"]).json()["data"]
    assert flip == {"upvotes": 0, "downvotes": 1, "voteCount": -1, "userVote": "down"}


def test_create_issue_validation_lists_all_fields(client, make_user, issue_payload):
    user = make_user()
    payload = issue_payload(title="", category="lava")
    payload["location"]["coordinates"]["latitude"] = 123

    resp = client.post("/issues", json=payload, headers=user["headers"])

    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    fields = {e["field"] for e in body["errors"]}
    assert {"title", "category", "location.coordinates.latitude"} <= fields


def test_list_issues_endpoint(client, make_user, issue_payload):
    user = make_user()
    _create_issue(client, user, issue_payload(description="Pothole on Main St"))
    _create_issue(client, user, issue_payload(description="Overflowing bins", category="sanitation"))

    body = client.get("/issues", params={"search": "pothole"}).json()
    assert body["success"] is True
    assert body["total"] == 1 and body["count"] == 1 and body["pages"] == 1
    assert body["data"][0]["description"] == "Pothole on Main St"

    bad = client.get("/issues", params={"limit": 500, "category": "lava"})
    assert bad.status_code == 400
    assert {e["field"] for e in bad.json()["errors"]} == {"limit", "category"}


def test_unknown_and_malformed_ids(client):
    assert client.get("/issues/0123456789abcdef01234567").status_code == 404
    resp = client.get("/issues/not-an-id")
    assert resp.status_code == 400
    assert resp.json()["errors"][0]["field"] == "id"


def test_comment_lifecycle(client, make_user, issue_payload):
    reporter, commenter = make_user("Reporter"), make_user("Commenter")
    issue = _create_issue(client, reporter, issue_payload())

    resp = client.post("/comments", json={"issueId": issue["id"], "content": "Me too"}, headers=commenter["headers"])
    assert resp.status_code == 201, resp.text
    comment = resp.json()["data"]
    assert comment["author"]["name"] == "Commenter"

    reply = client.post(
        "/comments",
        json={"issueId": issue["id"], "content": "Agreed", "parentCommentId": comment["id"]},
        headers=reporter["headers"],
    ).json()["data"]
    assert reply["parentComment"] == comment["id"]

    forbidden = client.put(f"/comments/{comment['id']}", json={"content": "x"}, headers=reporter["headers"])
    assert forbidden.status_code == 403

    edited = client.put(f"/comments/{comment['id']}", json={"content": "Me too!"}, headers=commenter["headers"])
    assert edited.json()["data"]["isEdited"] is True

    like = client.post(f"/comments/{comment['id']}/like", headers=reporter["headers"]).json()["data"]
    assert like == {"likes": 1, "likedByCaller": True}

    assert client.delete(f"/comments/{comment['id']}", headers=commenter["headers"]).status_code == 200
    remaining = client.get(f"/comments/issue/{issue['id']}").json()["data"]
    assert [c["id"] for c in remaining] == [reply["id"]]


def test_issue_delete_is_admin_only_and_cascades(client, make_user, issue_payload):
    reporter, admin = make_user(), make_user("Admin", is_admin=True)
    issue = _create_issue(client, reporter, issue_payload())
    client.post("/comments", json={"issueId": issue["id"], "content": "hello"}, headers=reporter["headers"])

    assert client.delete(f"/issues/{issue['id']}", headers=reporter["headers"]).status_code == 403
    assert client.delete(f"/issues/{issue['id']}", headers=admin["headers"]).status_code == 200

    assert client.get(f"/issues/{issue['id']}").status_code == 404
    assert client.get(f"/comments/issue/{issue['id']}").status_code == 404


def test_status_change_requires_admin(client, make_user, issue_payload):
    reporter = make_user()
    issue = _create_issue(client, reporter, issue_payload())

    resp = client.put(f"/issues/{issue['id']}/status", json={"status": "resolved"}, headers=reporter["headers"])

    assert resp.status_code == 403
    assert client.get(f"/issues/{issue['id']}").json()["data"]["issue"]["status"] == "pending"


def test_admin_endpoints(client, make_user, issue_payload):
    reporter, admin, other_admin = make_user("Reporter"), make_user("Admin", is_admin=True), make_user("Ops", is_admin=True)
    issue = _create_issue(client, reporter, issue_payload())

    assert client.get("/admin/stats", headers=reporter["headers"]).status_code == 403

    stats = client.get("/admin/stats", headers=admin["headers"]).json()["data"]
    assert stats["issues"]["total"] == 1
    assert stats["users"] == {"total": 3, "admin": 2, "regular": 1}

    assigned = client.put(
        f"/admin/issues/{issue['id']}/assign",
        json={"assignedTo": other_admin["id"]},
        headers=admin["headers"],
    ).json()["data"]
    assert assigned["assignedTo"]["name"] == "Ops"

    bad_assign = client.put(
        f"/admin/issues/{issue['id']}/assign",
        json={"assignedTo": reporter["id"]},
        headers=admin["headers"],
    )
    assert bad_assign.status_code == 400

    listing = client.get("/admin/issues", headers=admin["headers"]).json()
    assert listing["total"] == 1
    assert listing["data"][0]["assignedTo"]["name"] == "Ops"

    users = client.get("/admin/users", headers=admin["headers"]).json()
    assert users["total"] == 3
    assert all("password_hash" not in u for u in users["data"])

    analytics = client.get("/admin/analytics", params={"period": 7}, headers=admin["headers"]).json()["data"]
    assert analytics["period"] == 7
    assert analytics["topReporters"][0]["name"] == "Reporter"


def test_admin_cannot_deactivate_self(client, make_user):
    admin, citizen = make_user("Admin", is_admin=True), make_user("Citizen")

    own = client.put(f"/admin/users/{admin['id']}/status", json={"isActive": False}, headers=admin["headers"])
    assert own.status_code == 403

    resp = client.put(f"/admin/users/{citizen['id']}/status", json={"isActive": False}, headers=admin["headers"])
    assert resp.status_code == 200
    assert resp.json()["data"]["isActive"] is False
    assert client.get("/me", headers=citizen["headers"]).status_code == 403


def test_notifications_are_sent_after_writes(client, make_user, issue_payload, monkeypatch):
    sent = []
    monkeypatch.setattr(notifications, "send_email", lambda to, subject, body: sent.append((to, subject)))
    reporter, admin = make_user("Reporter"), make_user("Admin", is_admin=True)

    issue = _create_issue(client, reporter, issue_payload(title="Leaking hydrant"))
    client.put(f"/issues/{issue['id']}/status", json={"status": "in-progress"}, headers=admin["headers"])
    client.post("/comments", json={"issueId": issue["id"], "content": "Crew on site"}, headers=admin["headers"])

    assert sent == [
        (reporter["email"], "Issue Reported: Leaking hydrant"),
        (reporter["email"], "Status Update: Leaking hydrant"),
        (reporter["email"], "New Comment on Issue: Leaking hydrant"),
    ]


def test_notification_failure_does_not_fail_the_write(client, make_user, issue_payload, monkeypatch):
    def broken(to, subject, body):
        raise notifications.DependencyFailure("smtp down")

    monkeypatch.setattr(notifications, "send_email", broken)
    reporter = make_user()

    resp = client.post("/issues", json=issue_payload(), headers=reporter["headers"])

    assert resp.status_code == 201
    assert client.get("/issues").json()["total"] == 1


def test_status_email_carries_only_the_stored_note(client, make_user, issue_payload, monkeypatch):
    bodies = []
    monkeypatch.setattr(notifications, "send_email", lambda to, subject, body: bodies.append(body))
    reporter, admin = make_user("Reporter"), make_user("Admin", is_admin=True)
    issue = _create_issue(client, reporter, issue_payload())
    url = f"/issues/{issue['id']}/status"

    blank = client.put(url, json={"status": "in-progress", "note": "   "}, headers=admin["headers"])
    client.put(url, json={"status": "resolved", "note": "  Crew replaced the bulb  "}, headers=admin["headers"])

    assert blank.json()["comment"] is None
    assert "Note from the team" not in bodies[-2]
    assert "Note from the team: Crew replaced the bulb\n" in bodies[-1]


PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def _issue_form(**overrides):
    form = {
        "title": "Pothole",
        "description": "Deep pothole near the school gate",
        "category": "infrastructure",
        "priority": "high",
        "location[address]": "4 School Lane",
        "location[coordinates][latitude]": "51.5",
        "location[coordinates][longitude]": "-0.12",
        "tags[]": ["road", "school"],
    }
    form.update(overrides)
    return form


def test_create_issue_with_photo(client, make_user):
    user = make_user()

    resp = client.post(
        "/issues",
        data=_issue_form(),
        files={"image": ("pothole.png", PNG, "image/png")},
        headers=user["headers"],
    )

    assert resp.status_code == 201, resp.text
    data = resp.json()["data"]
    assert data["imageUrl"].startswith("/uploads/image-") and data["imageUrl"].endswith(".png")
    assert data["location"] == {
        "address": "4 School Lane",
        "coordinates": {"latitude": 51.5, "longitude": -0.12},
    }
    assert data["tags"] == ["road", "school"]

    served = client.get(data["imageUrl"])
    assert served.status_code == 200
    assert served.content == PNG


def test_form_issue_without_photo(client, make_user):
    resp = client.post("/issues", data=_issue_form(), headers=make_user()["headers"])

    assert resp.status_code == 201, resp.text
    assert resp.json()["data"]["imageUrl"] is None


def test_bad_upload_stores_nothing(client, make_user):
    user = make_user()

    not_image = client.post(
        "/issues",
        data=_issue_form(),
        files={"image": ("notes.txt", b"hello", "text/plain")},
        headers=user["headers"],
    )
    bad_fields = client.post(
        "/issues",
        data=_issue_form(category="lava", **{"location[coordinates][latitude]": "91"}),
        files={"image": ("pothole.png", PNG, "image/png")},
        headers=user["headers"],
    )
    not_json = client.post(
        "/issues",
        content=b"title=Pothole",
        headers={**user["headers"], "Content-Type": "text/plain"},
    )

    assert not_image.status_code == 400
    assert not_image.json()["errors"] == [{"field": "image", "message": "Only image files are allowed"}]
    assert {e["field"] for e in bad_fields.json()["errors"]} == {"category", "location.coordinates.latitude"}
    assert not_json.status_code == 400
    assert not_json.json()["errors"][0]["field"] == "body"
    assert client.get("/issues").json()["total"] == 0


def test_deleting_issue_removes_its_photo(client, make_user):
    reporter, admin = make_user(), make_user("Admin", is_admin=True)
    issue = client.post(
        "/issues",
        data=_issue_form(),
        files={"image": ("pothole.png", PNG, "image/png")},
        headers=reporter["headers"],
    ).json()["data"]

    assert client.delete(f"/issues/{issue['id']}", headers=admin["headers"]).status_code == 200

    assert client.get(issue["imageUrl"]).status_code == 404


def test_run_serves_app_with_uvicorn(monkeypatch):
    calls = []
    monkeypatch.setattr(main.uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))

    main.run()

    assert calls == [(main.app, {"host": main.config.HOST, "port": main.config.PORT, "log_config": None})]
