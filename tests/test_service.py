from dataclasses import replace
import time

from fastapi.testclient import TestClient
import pytest

from formbatch.service import create_app

from conftest import ScriptedDriver


HEADER = "Title,First Name,Last Name,Phone Number,Email,Marital Status,Group,Church Name\n"
VALID_CSV = HEADER + (
    "Sister,Ada,Lovelace,08012345678,ada@example.com,Single,CE LIMITLESS GROUP,CE Lagos\n"
    "Sister,Grace,Hopper,08012345679,grace@example.com,Married,CE LIMITLESS GROUP,CE Lagos\n"
    "Brother,Alan,Turing,08012345670,alan@example.com,Single,CE LIMITLESS GROUP,CE Lagos\n"
)


@pytest.fixture()
def drivers() -> list[ScriptedDriver]:
    return []


@pytest.fixture()
def client(test_settings, session_factory, drivers):
    def driver_factory(settings, layout) -> ScriptedDriver:
        driver = ScriptedDriver({"Grace": ["reject"]})
        drivers.append(driver)
        return driver

    app = create_app(test_settings, driver_factory=driver_factory, session_factory=session_factory)
    with TestClient(app) as test_client:
        yield test_client


def upload(client: TestClient, text: str = VALID_CSV, filename: str = "people.csv"):
    return client.post("/upload", files={"csvFile": (filename, text.encode("utf-8"), "text/csv")})


def wait_until(predicate, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.02)
    raise AssertionError("condition not reached in time")


def latest_run(client: TestClient) -> dict:
    runs = client.get("/runs").json()
    return runs[0] if runs else {}


def test_health(client: TestClient) -> None:
    body = client.get("/health").json()

    assert body["status"] == "healthy"
    assert body["version"] == "0.1.0"


def test_status_before_upload_is_idle(client: TestClient) -> None:
    assert client.get("/status").json() == {
        "state": "idle",
        "currentIndex": 0,
        "total": 0,
        "successCount": 0,
        "failedCount": 0,
        "retries": 0,
        "progressPercent": 0,
    }


def test_upload_then_run_to_completion(client: TestClient, drivers: list[ScriptedDriver]) -> None:
    uploaded = upload(client)
    assert uploaded.status_code == 200
    assert uploaded.json()["data"]["recordsCount"] == 3
    assert client.get("/status").json()["total"] == 3

    started = client.post("/start", json={"startIndex": 0, "delay": 0})
    assert started.status_code == 200
    assert started.json()["totalRecords"] == 3

    wait_until(lambda: latest_run(client).get("status") == "completed")

    status = client.get("/status").json()
    assert status["state"] == "completed"
    assert status["currentIndex"] == 3
    assert status["successCount"] == 2
    assert status["failedCount"] == 1
    assert status["retries"] == 1
    assert status["progressPercent"] == 100

    run = latest_run(client)
    assert run["trigger"] == "start"
    assert (run["successful"], run["failed"], run["totalRecords"]) == (2, 1, 3)
    assert drivers[0].opened == 1 and drivers[0].closed == 1
    assert ("Title", "Sister") in drivers[0].fills


def test_control_without_data_or_run_is_rejected(client: TestClient) -> None:
    started = client.post("/start", json={})
    assert started.status_code == 400
    assert started.json()["detail"] == "No data uploaded. Please upload a CSV first."

    for path in ("/stop", "/pause", "/resume"):
        assert client.post(path).status_code == 400


def test_upload_without_valid_rows_reports_details(client: TestClient) -> None:
    response = upload(client, HEADER + "Mr,J,Doe,08012345678,nope,Single,CE LIMITLESS GROUP,CE Lagos\n")

    assert response.status_code == 400
    body = response.json()
    assert body["detail"] == "No valid records found in CSV"
    assert body["details"][0]["row"] == 1
    assert client.get("/data-info").json() == {"hasData": False}


def test_non_csv_upload_is_rejected(client: TestClient) -> None:
    response = client.post("/upload", files={"csvFile": ("notes.txt", b"hello", "text/plain")})

    assert response.status_code == 400
    assert response.json()["detail"] == "Only CSV files are allowed"


def test_start_index_beyond_records_is_rejected(client: TestClient) -> None:
    upload(client)

    response = client.post("/start", json={"startIndex": 4})

    assert response.status_code == 400
    assert client.get("/status").json()["state"] == "idle"


def test_second_start_is_rejected_while_running_then_stop(client: TestClient) -> None:
    upload(client)
    assert client.post("/start", json={"delay": 60_000}).status_code == 200
    wait_until(lambda: client.get("/status").json()["currentIndex"] == 1)

    again = client.post("/start", json={})
    assert again.status_code == 400
    assert again.json()["detail"] == "Automation is already running"

    started = time.monotonic()
    assert client.post("/stop").status_code == 200
    wait_until(lambda: latest_run(client).get("status") == "completed")

    assert time.monotonic() - started < 10
    status = client.get("/status").json()
    assert status["state"] == "completed"
    assert status["currentIndex"] == 1


def test_pause_and_resume_over_http(client: TestClient) -> None:
    upload(client)
    client.post("/start", json={"delay": 60_000})
    wait_until(lambda: client.get("/status").json()["currentIndex"] == 1)

    assert client.post("/pause").status_code == 200
    wait_until(lambda: latest_run(client).get("status") == "paused")
    assert client.get("/status").json()["state"] == "paused"

    # The remaining records are paced with the same long delay, so stop once resumed.
    assert client.post("/resume").status_code == 200
    wait_until(lambda: client.get("/status").json()["currentIndex"] == 2)
    client.post("/stop")
    wait_until(lambda: latest_run(client).get("status") == "completed")

    runs = client.get("/runs").json()
    assert [run["trigger"] for run in runs] == ["resume", "start"]


def test_clear_forgets_uploaded_data(client: TestClient) -> None:
    upload(client)
    info = client.get("/data-info").json()
    assert info["hasData"] is True
    assert info["summary"] == {"total_rows": 3, "valid_records": 3, "invalid_records": 0}

    assert client.post("/clear").status_code == 200

    assert client.get("/data-info").json() == {"hasData": False}
    assert client.get("/status").json()["total"] == 0
    assert client.post("/start", json={}).status_code == 400


def test_sample_csv_download(client: TestClient) -> None:
    response = client.get("/sample-csv")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert response.text.splitlines()[0].startswith('"Title","First Name"')


def test_oversized_upload_is_rejected_before_processing(test_settings, session_factory) -> None:
    settings = replace(test_settings, max_upload_bytes=64)
    app = create_app(settings, driver_factory=lambda s, layout: ScriptedDriver(), session_factory=session_factory)

    with TestClient(app) as small_client:
        response = upload(small_client)

        assert response.status_code == 400
        assert response.json()["detail"] == "File too large. Max: 64 bytes"
        assert small_client.get("/data-info").json() == {"hasData": False}
