from datetime import datetime, timedelta, timezone

from eventsignup import gdpr, models
from eventsignup.config import settings


def _open_event(helpers, **kwargs):
    return helpers["make_event"](**kwargs)


def test_health_and_request_id(helpers):
    client = helpers["client"]
    resp = client.get("/api/health", headers={"X-Request-ID": "req-123"})
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "database": "ok"}
    assert resp.headers["X-Request-ID"] == "req-123"


def test_list_events_shows_only_open_events(helpers):
    client = helpers["client"]
    now = datetime.now(timezone.utc)
    open_event = _open_event(helpers, title="Open", capacity=3)
    _open_event(helpers, title="Draft", status=models.EventStatus.draft)
    _open_event(
        helpers,
        title="Closed",
        start_time=now + timedelta(days=2),
        registration_deadline=now - timedelta(hours=1),
    )
    user = helpers["make_user"]()
    client.post(f"/api/events/{open_event.id}/register", headers=helpers["auth_header"](helpers["token_for"](user)))

    resp = client.get("/api/events")

    assert resp.status_code == 200
    body = resp.json()
    assert [item["title"] for item in body] == ["Open"]
    assert body[0]["seats_taken"] == 1
    assert body[0]["seats_left"] == 2


def test_get_event_not_found(helpers):
    resp = helpers["client"].get("/api/events/9999")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "http_404"


def test_register_requires_auth(helpers):
    event = _open_event(helpers)
    resp = helpers["client"].post(f"/api/events/{event.id}/register")
    assert resp.status_code == 401


def test_register_and_duplicate(helpers):
    client = helpers["client"]
    event = _open_event(helpers)
    user = helpers["make_user"]()
    headers = helpers["auth_header"](helpers["token_for"](user))

    created = client.post(f"/api/events/{event.id}/register", json={"additional_data": {"tshirt": "M"}}, headers=headers)
    assert created.status_code == 201
    body = created.json()
    assert body["reactivated"] is False
    assert body["registration"]["additional_data"] == {"tshirt": "M"}

    duplicate = client.post(f"/api/events/{event.id}/register", headers=headers)
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "already_registered"

    log_actions = [row.action_type for row in helpers["db"].query(models.ActivityLog).all()]
    assert log_actions == ["registration_create"]


def test_register_full_event(helpers):
    client = helpers["client"]
    event = _open_event(helpers, capacity=1)
    first = helpers["make_user"]("first@test.ro")
    second = helpers["make_user"]("second@test.ro")

    assert client.post(f"/api/events/{event.id}/register", headers=helpers["auth_header"](helpers["token_for"](first))).status_code == 201
    resp = client.post(f"/api/events/{event.id}/register", headers=helpers["auth_header"](helpers["token_for"](second)))

    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "event_full"


def test_blocked_user_gets_forbidden(helpers):
    event = _open_event(helpers)
    user = helpers["make_user"](is_blocked=True)
    resp = helpers["client"].post(
        f"/api/events/{event.id}/register",
        headers=helpers["auth_header"](helpers["token_for"](user)),
    )
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "user_blocked"


def test_cancel_and_reregister_over_http(helpers):
    client = helpers["client"]
    event = _open_event(helpers)
    user = helpers["make_user"]()
    headers = helpers["auth_header"](helpers["token_for"](user))
    registration_id = client.post(f"/api/events/{event.id}/register", headers=headers).json()["registration"]["id"]

    too_short = client.request("DELETE", f"/api/events/{event.id}/register", json={"cancellation_reason": "no"}, headers=headers)
    assert too_short.status_code == 422

    cancelled = client.request(
        "DELETE",
        f"/api/events/{event.id}/register",
        json={"cancellation_reason": "Feeling unwell"},
        headers=headers,
    )
    assert cancelled.status_code == 200
    assert cancelled.json()["cancellation_reason"] == "Feeling unwell"
    assert cancelled.json()["cancelled_at"] is not None

    again = client.post(f"/api/events/{event.id}/register", headers=headers)
    assert again.status_code == 201
    assert again.json()["reactivated"] is True
    assert again.json()["registration"]["id"] == registration_id


def test_cancel_too_close_to_start(helpers):
    client = helpers["client"]
    now = datetime.now(timezone.utc)
    event = _open_event(helpers, start_time=now + timedelta(days=2), registration_deadline=now + timedelta(days=1))
    user = helpers["make_user"]()
    headers = helpers["auth_header"](helpers["token_for"](user))
    client.post(f"/api/events/{event.id}/register", headers=headers)

    resp = client.delete(f"/api/events/{event.id}/register", headers=headers)

    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "cancellation_too_late"


def test_registration_endpoints_disabled_in_maintenance_mode(helpers):
    client = helpers["client"]
    event = _open_event(helpers)
    user = helpers["make_user"]()
    headers = helpers["auth_header"](helpers["token_for"](user))

    old = settings.maintenance_mode_registrations_disabled
    settings.maintenance_mode_registrations_disabled = True
    try:
        assert client.post(f"/api/events/{event.id}/register", headers=headers).status_code == 503
        assert client.delete(f"/api/events/{event.id}/register", headers=headers).status_code == 503
    finally:
        settings.maintenance_mode_registrations_disabled = old


def test_my_registrations(helpers):
    client = helpers["client"]
    event = _open_event(helpers, title="Mine")
    user = helpers["make_user"]()
    headers = helpers["auth_header"](helpers["token_for"](user))
    client.post(f"/api/events/{event.id}/register", headers=headers)

    resp = client.get("/api/me/registrations", headers=headers)

    assert resp.status_code == 200
    assert [(item["event_title"], item["event_status"]) for item in resp.json()] == [("Mine", "active")]


def test_delete_account_rejects_wrong_password(helpers):
    user = helpers["make_user"](password="correct-horse")
    resp = helpers["client"].request(
        "DELETE",
        "/api/me",
        json={"password": "wrong"},
        headers=helpers["auth_header"](helpers["token_for"](user)),
    )
    assert resp.status_code == 400
    assert helpers["db"].query(models.User).count() == 1


def test_delete_account_immediately(helpers):
    client = helpers["client"]
    user = helpers["make_user"](password="correct-horse")
    user_id = user.id
    headers = helpers["auth_header"](helpers["token_for"](user))

    resp = client.request("DELETE", "/api/me", json={"password": "correct-horse"}, headers=headers)

    assert resp.status_code == 200
    assert resp.json() == {"deleted": True, "immediate": True, "delete_date": None}
    db = helpers["db"]
    assert db.query(models.User).filter(models.User.id == user_id).first() is None
    log_row = db.query(models.ActivityLog).one()
    assert log_row.action_type == "profile_deleted_immediate"
    assert log_row.user_id is None
    assert log_row.details == {"deleted_user_id": user_id}

    assert client.get("/api/me/registrations", headers=headers).status_code == 401


def test_delete_account_scheduled_then_listed_for_admin(helpers):
    client = helpers["client"]
    event = _open_event(helpers)
    user = helpers["make_user"](password="correct-horse")
    headers = helpers["auth_header"](helpers["token_for"](user))
    client.post(f"/api/events/{event.id}/register", headers=headers)

    resp = client.request("DELETE", "/api/me", json={"password": "correct-horse"}, headers=headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["deleted"] is False
    assert body["immediate"] is False
    assert body["delete_date"] is not None

    again = client.request("DELETE", "/api/me", json={"password": "correct-horse"}, headers=headers)
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "deletion_already_scheduled"

    assert client.get("/api/admin/deletions", headers=headers).status_code == 403

    admin = helpers["make_admin"]()
    listing = client.get("/api/admin/deletions", headers=helpers["auth_header"](helpers["token_for"](admin)))
    assert listing.status_code == 200
    assert listing.json()["total"] == 1
    assert listing.json()["items"][0]["user_email"] == user.email


def test_admin_emails_grant_admin_access(helpers):
    user = helpers["make_user"]("boss@test.ro")
    old = settings.admin_emails
    settings.admin_emails = ["boss@test.ro"]
    try:
        resp = helpers["client"].post(
            "/api/admin/deletions/sweep",
            headers=helpers["auth_header"](helpers["token_for"](user)),
        )
    finally:
        settings.admin_emails = old
    assert resp.status_code == 200
    assert resp.json()["deleted"] == 0


def test_cron_endpoint_authorization(helpers):
    client = helpers["client"]
    assert client.post("/api/cron/delete-users").status_code == 401
    assert client.post("/api/cron/delete-users", headers={"Authorization": "Bearer nope"}).status_code == 401

    old = settings.cron_secret
    settings.cron_secret = None
    try:
        assert client.post("/api/cron/delete-users", headers={"Authorization": "Bearer nope"}).status_code == 503
    finally:
        settings.cron_secret = old


def test_cron_endpoint_sweeps_due_users(helpers):
    client = helpers["client"]
    db = helpers["db"]
    user = helpers["make_user"]()
    user_id = user.id
    past = datetime.now(timezone.utc) - timedelta(days=60)
    gdpr_request_now = past - timedelta(days=1)
    event = helpers["make_event"](start_time=past, registration_deadline=past - timedelta(days=1))
    db.add(models.Registration(user_id=user_id, event_id=event.id, registered_at=past - timedelta(days=2)))
    db.commit()
    gdpr.request_deletion(db, user_id, now=gdpr_request_now)

    resp = client.post("/api/cron/delete-users", headers={"Authorization": f"Bearer {settings.cron_secret}"})

    assert resp.status_code == 200
    assert resp.json()["success"] is True
    assert resp.json()["deleted"] == 1
    assert db.query(models.User).filter(models.User.id == user_id).first() is None
    cron_rows = db.query(models.ActivityLog).filter(models.ActivityLog.action_type == "system_cron_deletion").all()
    assert len(cron_rows) == 1
    assert cron_rows[0].details["triggered_by"] == "cron"


def test_event_response_reports_openness(helpers):
    client = helpers["client"]
    event = _open_event(helpers, capacity=1)
    assert client.get(f"/api/events/{event.id}").json()["is_open"] is True

    user = helpers["make_user"]()
    client.post(f"/api/events/{event.id}/register", headers=helpers["auth_header"](helpers["token_for"](user)))

    body = client.get(f"/api/events/{event.id}").json()
    assert body["seats_left"] == 0
    assert body["is_open"] is False


def test_admin_lists_active_registrations_for_event(helpers):
    client = helpers["client"]
    event = _open_event(helpers)
    stays = helpers["make_user"]("stays@test.ro", first_name="Maria", last_name="Ionescu")
    leaves = helpers["make_user"]("leaves@test.ro")
    for user in (stays, leaves):
        client.post(f"/api/events/{event.id}/register", headers=helpers["auth_header"](helpers["token_for"](user)))
    client.delete(f"/api/events/{event.id}/register", headers=helpers["auth_header"](helpers["token_for"](leaves)))

    forbidden = client.get(
        f"/api/admin/events/{event.id}/registrations",
        headers=helpers["auth_header"](helpers["token_for"](stays)),
    )
    assert forbidden.status_code == 403

    admin_headers = helpers["auth_header"](helpers["token_for"](helpers["make_admin"]()))
    resp = client.get(f"/api/admin/events/{event.id}/registrations", headers=admin_headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["total"] == 1
    assert body["items"][0]["user"] == {
        "id": stays.id,
        "first_name": "Maria",
        "last_name": "Ionescu",
        "email": "stays@test.ro",
    }

    assert client.get("/api/admin/events/9999/registrations", headers=admin_headers).status_code == 404


def test_admin_cancels_registration_inside_user_window(helpers):
    client = helpers["client"]
    now = datetime.now(timezone.utc)
    event = _open_event(helpers, start_time=now + timedelta(days=1), registration_deadline=now + timedelta(hours=12))
    user = helpers["make_user"]()
    user_id = user.id
    registration_id = client.post(
        f"/api/events/{event.id}/register",
        headers=helpers["auth_header"](helpers["token_for"](user)),
    ).json()["registration"]["id"]
    admin = helpers["make_admin"]()
    admin_id = admin.id
    admin_headers = helpers["auth_header"](helpers["token_for"](admin))
    url = f"/api/admin/registrations/{registration_id}/cancel"

    assert client.post(url, json={"reason": "Venue closed"}, headers=helpers["auth_header"](helpers["token_for"](user))).status_code == 403
    assert client.post(url, json={"reason": "nope"}, headers=admin_headers).status_code == 422

    resp = client.post(url, json={"reason": "Venue closed"}, headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["cancellation_reason"] == "Venue closed"
    assert resp.json()["cancelled_at"] is not None

    again = client.post(url, json={"reason": "Venue closed"}, headers=admin_headers)
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "registration_already_cancelled"

    missing = client.post("/api/admin/registrations/9999/cancel", json={"reason": "Venue closed"}, headers=admin_headers)
    assert missing.status_code == 404

    audit = (
        helpers["db"]
        .query(models.ActivityLog)
        .filter(models.ActivityLog.action_type == "registration_cancel")
        .one()
    )
    assert audit.user_id == admin_id
    assert audit.details == {
        "registration_id": registration_id,
        "user_id": user_id,
        "event_id": event.id,
        "reason": "Venue closed",
        "cancelled_by": "admin",
    }
