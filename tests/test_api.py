import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from ubus.main import create_app

from .conftest import ADMIN_EMAIL, ADMIN_PASSWORD


def auth(token):
    return {"Authorization": f"Bearer {token}"}


def login(client, email, password):
    response = client.post("/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()


def signup(client, email, role, route_number=None):
    payload = {"email": email, "password": "secret1", "role": role, "name": email.split("@")[0],
               "collegeId": email.split("@")[0].upper()}
    if route_number is not None:
        payload["routeNumber"] = route_number
    response = client.post("/auth/signup", json=payload)
    assert response.status_code == 200, response.text
    return response.json()


@pytest.fixture
def admin_token(client):
    return login(client, ADMIN_EMAIL, ADMIN_PASSWORD)["access_token"]


def test_read_root(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json() == {"message": "Welcome to the College Bus Tracking API"}


def test_signup_then_me(client):
    token = signup(client, "asha@college.edu", "student", route_number="R10")

    response = client.get("/auth/me", headers=auth(token["access_token"]))

    assert response.status_code == 200
    assert response.json()["routeNumber"] == "R10"
    assert response.json()["collegeId"] == "ASHA"
    assert token["role"] == "student"


def test_signup_errors(client):
    admin = client.post("/auth/signup", json={"email": "boss@college.edu", "password": "secret1", "role": "admin",
                                              "name": "Boss", "collegeId": "B1"})
    no_route = client.post("/auth/signup", json={"email": "kid@college.edu", "password": "secret1",
                                                 "role": "student", "name": "Kid", "collegeId": "K1"})
    bad_email = client.post("/auth/signup", json={"email": "nope", "password": "secret1", "role": "driver",
                                                  "name": "Nope", "collegeId": "N1"})

    assert admin.status_code == 403
    assert no_route.status_code == 400
    assert bad_email.status_code == 400
    assert bad_email.json()["detail"] == "The email address is badly formatted."


def test_wrong_password_is_unauthorized(client):
    response = client.post("/auth/login", json={"email": ADMIN_EMAIL, "password": "nope"})

    assert response.status_code == 401


def test_token_form_login(client):
    response = client.post("/auth/token", data={"username": ADMIN_EMAIL, "password": ADMIN_PASSWORD})

    assert response.status_code == 200
    assert response.json()["role"] == "admin"


def test_roles_are_enforced(client, admin_token):
    student = signup(client, "asha@college.edu", "student", route_number="R10")

    assert client.get("/admin/overview", headers=auth(student["access_token"])).status_code == 403
    assert client.get("/driver/my_bus", headers=auth(admin_token)).status_code == 403
    assert client.get("/students/bus").status_code == 401


def test_admin_overview_and_flash(client, admin_token):
    response = client.post("/admin/routes", json={"routeNumber": "R10"}, headers=auth(admin_token))
    assert response.status_code == 200
    assert response.json()["routeNumber"] == "R10"

    overview = client.get("/admin/overview", headers=auth(admin_token)).json()
    assert [route["routeNumber"] for route in overview["routes"]] == ["R10"]
    assert overview["message"] == "Route R10 added!"
    assert overview["kind"] == "admin"


def test_blank_route_is_rejected(client, admin_token):
    response = client.post("/admin/routes", json={"routeNumber": "  "}, headers=auth(admin_token))

    assert response.status_code == 400
    assert response.json()["detail"] == "Route number is required."


def test_trip_end_to_end(client, admin_token):
    driver = signup(client, "ravi@college.edu", "driver")
    student = signup(client, "asha@college.edu", "student", route_number="R10")
    headers = auth(admin_token)

    assert client.post("/driver/trip/start", headers=auth(driver["access_token"])).status_code == 409

    bus_id = client.post("/admin/buses", json={"busNumber": "PB 01 9999"}, headers=headers).json()["id"]
    assert client.put(f"/admin/buses/{bus_id}/assignment", json={"field": "route", "value": "R10"},
                      headers=headers).status_code == 200
    assert client.put(f"/admin/buses/{bus_id}/assignment", json={"field": "driver", "value": driver["uid"]},
                      headers=headers).status_code == 200

    my_bus = client.get("/driver/my_bus", headers=auth(driver["access_token"])).json()
    assert my_bus["bus"]["busNumber"] == "PB 01 9999"
    assert my_bus["status"] == "inactive"
    assert client.get("/students/bus", headers=auth(student["access_token"])).json()["status"] == "inactive"

    started = client.post("/driver/trip/start", headers=auth(driver["access_token"])).json()
    assert started["message"] == "Trip started successfully"
    assert started["state"]["status"] == "live"
    again = client.post("/driver/trip/start", headers=auth(driver["access_token"])).json()
    assert again["message"] == "Trip already active for this driver"

    student_view = client.get("/students/bus", headers=auth(student["access_token"])).json()
    assert student_view["status"] == "live"
    assert student_view["message"] == "Bus is LIVE!"
    assert student_view["bus"]["location"] is not None

    tracking = client.get(f"/tracking/bus/{bus_id}", headers=auth(student["access_token"])).json()
    assert tracking["isTripActive"] is True
    map_page = client.get(f"/tracking/map/{bus_id}", headers=auth(student["access_token"]))
    assert map_page.status_code == 200
    assert "PB 01 9999" in map_page.text

    stopped = client.post("/driver/trip/stop", headers=auth(driver["access_token"])).json()
    assert stopped["message"] == "Trip ended successfully"
    assert client.post("/driver/trip/stop", headers=auth(driver["access_token"])).json()["message"] == (
        "No active trip for this driver"
    )
    assert client.get("/students/bus", headers=auth(student["access_token"])).json()["status"] == "inactive"


def test_simulated_driver_cannot_push_positions(client):
    driver = signup(client, "ravi@college.edu", "driver")

    response = client.post("/driver/position", json={"lat": 30.7, "lng": 76.7}, headers=auth(driver["access_token"]))

    assert response.status_code == 409


def test_device_driver_pushes_positions(settings):
    with TestClient(create_app(settings)) as client:
        driver = signup(client, "ravi@college.edu", "driver")
        headers = auth(driver["access_token"])

        assert client.post("/driver/position", json={"lat": 30.7, "lng": 76.7}, headers=headers).status_code == 200
        assert client.post("/driver/position", json={"lat": 130.7, "lng": 76.7}, headers=headers).status_code == 422
        assert client.post("/driver/position/denied", json={}, headers=headers).status_code == 200


def test_map_for_unknown_bus(client, admin_token):
    assert client.get("/tracking/map/missing", headers=auth(admin_token)).status_code == 404
    assert client.get("/tracking/bus/missing", headers=auth(admin_token)).status_code == 404


def test_logout_revokes_the_token(client):
    token = signup(client, "asha@college.edu", "student", route_number="R10")["access_token"]

    assert client.post("/auth/logout", headers=auth(token)).status_code == 200

    response = client.get("/auth/me", headers=auth(token))
    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Bearer"


def test_websocket_streams_the_view(client):
    token = signup(client, "asha@college.edu", "student", route_number="R10")["access_token"]

    with client.websocket_connect(f"/tracking/ws?token={token}") as websocket:
        first = websocket.receive_json()
        websocket.send_json({"type": "position", "lat": 1, "lng": 2})
        reply = websocket.receive_json()

    assert first["type"] == "state"
    assert first["data"]["kind"] == "student"
    assert first["data"]["status"] == "no_bus"
    assert reply == {"type": "error", "detail": "This session does not accept device positions."}


def test_websocket_rejects_invalid_tokens(client):
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect("/tracking/ws?token=bogus") as websocket:
            websocket.receive_json()

    assert excinfo.value.code == 4001


def test_websocket_disconnect_releases_its_view(client):
    token = signup(client, "asha@college.edu", "student", route_number="R10")["access_token"]
    store = client.app.state.db.store
    listeners = store.listener_count()

    with client.websocket_connect(f"/tracking/ws?token={token}") as websocket:
        websocket.receive_json()
        assert store.listener_count() == listeners + 1

    assert store.listener_count() == listeners
    assert client.get("/students/bus", headers=auth(token)).json()["status"] == "no_bus"


def test_websocket_closes_when_the_session_ends(client):
    token = signup(client, "asha@college.edu", "student", route_number="R10")["access_token"]

    with client.websocket_connect(f"/tracking/ws?token={token}") as websocket:
        websocket.receive_json()
        assert client.post("/auth/logout", headers=auth(token)).status_code == 200
        with pytest.raises(WebSocketDisconnect):
            websocket.receive_json()
