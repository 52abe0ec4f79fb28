import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from tokenauth.api.error_handling import register_exception_handlers
from tokenauth.service.errors import AuthenticationError, NotFoundError, ServerError
from tokenauth.storage.errors import ConstraintViolation, StoreError


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/unauthorized")
    async def unauthorized():
        raise AuthenticationError("not logged in")

    @app.get("/missing")
    async def missing():
        raise NotFoundError("user not found", detail={"user_id": 7})

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("username already exists", {"username": "alice"})

    @app.get("/store")
    async def store():
        raise StoreError("database unavailable", {"error_type": "OperationalError"})

    @app.get("/server")
    async def server():
        raise ServerError("identity middleware is not installed")

    @app.get("/http")
    async def http():
        raise HTTPException(status_code=418, detail="teapot")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("boom")

    return TestClient(app, raise_server_exceptions=False)


@pytest.mark.parametrize(
    "path,status,code",
    [
        ("/unauthorized", 401, "unauthorized"),
        ("/missing", 404, "not_found"),
        ("/conflict", 409, "conflict"),
        ("/store", 500, "server_error"),
        ("/server", 500, "server_error"),
        ("/http", 418, "server_error"),
        ("/boom", 500, "server_error"),
    ],
)
def test_error_envelope(client, path, status, code):
    response = client.get(path)

    assert response.status_code == status
    body = response.json()
    assert body["status"] == "error"
    assert body["data"] is None
    assert body["error"]["code"] == code
    assert body["request_id"]


def test_details_are_passed_through(client):
    assert client.get("/missing").json()["error"]["details"] == {"user_id": 7}
    assert client.get("/conflict").json()["error"]["details"] == {"username": "alice"}


def test_store_error_hides_driver_detail(client):
    error = client.get("/store").json()["error"]

    assert error["message"] == "storage unavailable"
    assert error["details"] is None
