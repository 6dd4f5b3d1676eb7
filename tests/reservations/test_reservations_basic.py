from reservations_service import models

DAY = "2026-03-02"


def reservation_body(campus, start="14:00", end="16:00", people=2, room_key="small_room_id", **extra):
    body = {
        "room_id": campus[room_key],
        "building_id": campus["library_id"],
        "reservation_date": DAY,
        "start_time": start,
        "end_time": end,
        "purpose": "group-project",
        "number_of_people": people,
    }
    body.update(extra)
    return body


def test_student_can_create_pending_reservation(client, campus, headers_for):
    res = client.post(
        "/api/v1/reservations",
        json=reservation_body(campus, notes="thesis group"),
        headers=headers_for(1),
    )
    assert res.status_code == 201
    data = res.json()
    assert data["user_id"] == 1
    assert data["room_id"] == campus["small_room_id"]
    assert data["status"] == "pending"
    assert data["start_time"] == "14:00"
    assert data["end_time"] == "16:00"
    assert data["duration"] == 120
    assert data["notes"] == "thesis group"
    assert data["cancelled_at"] is None


def test_overlapping_reservation_is_a_conflict(client, campus, headers_for):
    res1 = client.post("/api/v1/reservations", json=reservation_body(campus), headers=headers_for(1))
    assert res1.status_code == 201

    res2 = client.post(
        "/api/v1/reservations",
        json=reservation_body(campus, start="15:00", end="17:00"),
        headers=headers_for(2),
    )
    assert res2.status_code == 409
    body = res2.json()
    assert body["service"] == "reservations"
    assert "already booked" in body["detail"].lower()


def test_touching_reservation_is_allowed(client, campus, headers_for):
    res1 = client.post("/api/v1/reservations", json=reservation_body(campus), headers=headers_for(1))
    assert res1.status_code == 201

    res2 = client.post(
        "/api/v1/reservations",
        json=reservation_body(campus, start="16:00", end="17:00"),
        headers=headers_for(2),
    )
    assert res2.status_code == 201


def test_capacity_exceeded_is_rejected(client, campus, headers_for):
    res = client.post(
        "/api/v1/reservations",
        json=reservation_body(campus, people=5),
        headers=headers_for(1),
    )
    assert res.status_code == 400
    assert res.json()["detail"] == "Room capacity is 4, requested 5"


def test_end_before_start_is_rejected(client, campus, headers_for):
    res = client.post(
        "/api/v1/reservations",
        json=reservation_body(campus, start="16:00", end="16:00"),
        headers=headers_for(1),
    )
    assert res.status_code == 400
    assert "end time must be after start time" in res.json()["detail"].lower()


def test_malformed_time_and_purpose_fail_validation(client, campus, headers_for):
    res = client.post(
        "/api/v1/reservations",
        json=reservation_body(campus, start="25:00"),
        headers=headers_for(1),
    )
    assert res.status_code == 422

    res = client.post(
        "/api/v1/reservations",
        json=reservation_body(campus, purpose="party"),
        headers=headers_for(1),
    )
    assert res.status_code == 422


def test_missing_room_or_building_is_not_found(client, campus, headers_for):
    body = reservation_body(campus)
    body["room_id"] = 999
    res = client.post("/api/v1/reservations", json=body, headers=headers_for(1))
    assert res.status_code == 404
    assert res.json()["detail"] == "Room not found"

    body = reservation_body(campus)
    body["building_id"] = 999
    res = client.post("/api/v1/reservations", json=body, headers=headers_for(1))
    assert res.status_code == 404
    assert res.json()["detail"] == "Building not found"


def test_room_from_another_building_is_rejected(client, campus, headers_for):
    body = reservation_body(campus, room_key="lab_room_id")
    res = client.post("/api/v1/reservations", json=body, headers=headers_for(1))
    assert res.status_code == 400


def test_requests_without_valid_token_are_rejected(client, campus):
    res = client.post("/api/v1/reservations", json=reservation_body(campus))
    assert res.status_code in (401, 403)

    res = client.get("/api/v1/reservations", headers={"Authorization": "Bearer not-a-token"})
    assert res.status_code == 401


def test_list_my_reservations_filters_by_user_and_status(client, campus, headers_for):
    client.post("/api/v1/reservations", json=reservation_body(campus), headers=headers_for(1))
    client.post(
        "/api/v1/reservations",
        json=reservation_body(campus, start="09:00", end="10:00"),
        headers=headers_for(1),
    )
    client.post(
        "/api/v1/reservations",
        json=reservation_body(campus, room_key="large_room_id"),
        headers=headers_for(2),
    )

    res = client.get("/api/v1/reservations", headers=headers_for(1))
    assert res.status_code == 200
    mine = res.json()
    assert [r["start_time"] for r in mine] == ["09:00", "14:00"]
    assert all(r["user_id"] == 1 for r in mine)

    res = client.get("/api/v1/reservations?status=confirmed", headers=headers_for(1))
    assert res.json() == []


def test_owner_and_admin_can_read_others_cannot(client, campus, headers_for):
    created = client.post(
        "/api/v1/reservations", json=reservation_body(campus), headers=headers_for(1)
    ).json()
    url = f"/api/v1/reservations/{created['id']}"

    assert client.get(url, headers=headers_for(1)).status_code == 200
    assert client.get(url, headers=headers_for(99, "admin")).status_code == 200
    assert client.get(url, headers=headers_for(2)).status_code == 403
    assert client.get("/api/v1/reservations/999", headers=headers_for(1)).status_code == 404


def test_owner_can_change_time_of_pending_reservation(client, campus, headers_for):
    created = client.post(
        "/api/v1/reservations", json=reservation_body(campus), headers=headers_for(1)
    ).json()

    res = client.put(
        f"/api/v1/reservations/{created['id']}",
        json={"start_time": "15:00", "end_time": "17:30", "notes": "moved"},
        headers=headers_for(1),
    )
    assert res.status_code == 200
    data = res.json()
    assert data["start_time"] == "15:00"
    assert data["end_time"] == "17:30"
    assert data["duration"] == 150
    assert data["notes"] == "moved"


def test_update_into_taken_slot_is_a_conflict(client, campus, headers_for):
    client.post("/api/v1/reservations", json=reservation_body(campus), headers=headers_for(1))
    other = client.post(
        "/api/v1/reservations",
        json=reservation_body(campus, start="10:00", end="11:00"),
        headers=headers_for(2),
    ).json()

    res = client.put(
        f"/api/v1/reservations/{other['id']}",
        json={"end_time": "14:30"},
        headers=headers_for(2),
    )
    assert res.status_code == 409
    assert res.json()["detail"] == "New time slot is already booked"


def test_update_rejects_inverted_time_and_capacity(client, campus, headers_for):
    created = client.post(
        "/api/v1/reservations", json=reservation_body(campus), headers=headers_for(1)
    ).json()
    url = f"/api/v1/reservations/{created['id']}"

    assert client.put(url, json={"end_time": "13:00"}, headers=headers_for(1)).status_code == 400
    assert client.put(url, json={"number_of_people": 5}, headers=headers_for(1)).status_code == 400

    res = client.put(url, json={"number_of_people": 4}, headers=headers_for(1))
    assert res.status_code == 200
    assert res.json()["number_of_people"] == 4


def test_other_user_cannot_update(client, campus, headers_for):
    created = client.post(
        "/api/v1/reservations", json=reservation_body(campus), headers=headers_for(1)
    ).json()

    res = client.put(
        f"/api/v1/reservations/{created['id']}",
        json={"notes": "mine now"},
        headers=headers_for(2),
    )
    assert res.status_code == 403


def test_confirmed_reservation_only_editable_together_with_confirm(client, campus, headers_for):
    created = client.post(
        "/api/v1/reservations", json=reservation_body(campus), headers=headers_for(1)
    ).json()
    url = f"/api/v1/reservations/{created['id']}"

    res = client.put(url, json={"status": "confirmed"}, headers=headers_for(99, "admin"))
    assert res.status_code == 200
    assert res.json()["status"] == "confirmed"

    res = client.put(url, json={"number_of_people": 3}, headers=headers_for(1))
    assert res.status_code == 400
    assert res.json()["detail"] == "Can only modify pending reservations"

    res = client.put(
        url,
        json={"number_of_people": 3, "status": "confirmed"},
        headers=headers_for(1),
    )
    assert res.status_code == 200
    assert res.json()["number_of_people"] == 3


def test_update_status_limited_to_confirm_and_cancel(client, campus, headers_for):
    created = client.post(
        "/api/v1/reservations", json=reservation_body(campus), headers=headers_for(1)
    ).json()
    url = f"/api/v1/reservations/{created['id']}"

    res = client.put(url, json={"status": "completed"}, headers=headers_for(1))
    assert res.status_code == 400

    res = client.put(url, json={"status": "cancelled"}, headers=headers_for(1))
    assert res.status_code == 200
    data = res.json()
    assert data["status"] == "cancelled"
    assert data["cancelled_by"] == 1
    assert data["cancelled_at"] is not None

    # terminal: confirming a cancelled reservation is not a legal transition
    res = client.put(url, json={"status": "confirmed"}, headers=headers_for(1))
    assert res.status_code == 400


def test_cancel_records_reason_and_actor(client, campus, headers_for):
    created = client.post(
        "/api/v1/reservations", json=reservation_body(campus), headers=headers_for(1)
    ).json()

    res = client.delete(
        f"/api/v1/reservations/{created['id']}?reason=exam%20moved",
        headers=headers_for(99, "admin"),
    )
    assert res.status_code == 200
    data = res.json()
    assert data["status"] == "cancelled"
    assert data["cancel_reason"] == "exam moved"
    assert data["cancelled_by"] == 99

    # slot is free again
    res = client.post("/api/v1/reservations", json=reservation_body(campus), headers=headers_for(2))
    assert res.status_code == 201


def test_cancel_twice_and_by_stranger_rejected(client, campus, headers_for):
    created = client.post(
        "/api/v1/reservations", json=reservation_body(campus), headers=headers_for(1)
    ).json()
    url = f"/api/v1/reservations/{created['id']}"

    assert client.delete(url, headers=headers_for(2)).status_code == 403
    assert client.delete(url, headers=headers_for(1)).status_code == 200

    res = client.delete(url, headers=headers_for(1))
    assert res.status_code == 400
    assert "cannot cancel" in res.json()["detail"].lower()


def test_cancelling_completed_reservation_is_rejected(client, campus, headers_for, db):
    created = client.post(
        "/api/v1/reservations", json=reservation_body(campus), headers=headers_for(1)
    ).json()
    reservation = db.get(models.Reservation, created["id"])
    reservation.status = models.ReservationStatus.COMPLETED
    db.commit()

    res = client.delete(f"/api/v1/reservations/{created['id']}", headers=headers_for(1))
    assert res.status_code == 400


def test_only_admin_marks_no_show(client, campus, headers_for):
    created = client.post(
        "/api/v1/reservations", json=reservation_body(campus), headers=headers_for(1)
    ).json()
    url = f"/api/v1/reservations/{created['id']}/no-show"

    assert client.post(url, headers=headers_for(1)).status_code == 403

    res = client.post(url, headers=headers_for(99, "admin"))
    assert res.status_code == 200
    assert res.json()["status"] == "no-show"

    assert client.post(url, headers=headers_for(99, "admin")).status_code == 400


def test_room_calendar_lists_active_reservations_for_day(client, campus, headers_for):
    client.post("/api/v1/reservations", json=reservation_body(campus), headers=headers_for(1))
    cancelled = client.post(
        "/api/v1/reservations",
        json=reservation_body(campus, start="08:00", end="09:00"),
        headers=headers_for(2),
    ).json()
    client.delete(f"/api/v1/reservations/{cancelled['id']}", headers=headers_for(2))
    client.post(
        "/api/v1/reservations",
        json=reservation_body(campus, start="10:00", end="11:00", reservation_date="2026-03-03"),
        headers=headers_for(2),
    )

    res = client.get(
        f"/api/v1/rooms/{campus['small_room_id']}/reservations?date={DAY}",
        headers=headers_for(3),
    )
    assert res.status_code == 200
    data = res.json()
    assert len(data) == 1
    assert data[0]["start_time"] == "14:00"

    res = client.get("/api/v1/rooms/999/reservations", headers=headers_for(3))
    assert res.status_code == 404
