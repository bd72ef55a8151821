import pytest
from unittest.mock import MagicMock, patch
from starlette.requests import Request
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.exceptions import RequestValidationError
from fastapi import FastAPI, status

from app.core.exceptions import (
    ConsistencyError,
    ExternalGatewayError,
    GatewayPayloadError,
    InvalidTransitionError,
    NotFoundError,
    SubscriptionError,
    ValidationError,
)
from app.core.global_error_handler import (
    http_exception_handler,
    validation_exception_handler,
    general_exception_handler,
    subscription_exception_handler,
    status_for_subscription_error,
    create_error_response,
    register_global_exception_handlers
)

# --- Mocking dependencies ---
@pytest.fixture
def mock_logger():
    with patch("app.core.global_error_handler.logger") as mock:
        yield mock

@pytest.fixture
def mock_traceback():
    with patch("app.core.global_error_handler.traceback") as mock:
        mock.format_exc.return_value = "Mocked Traceback"
        yield mock

@pytest.fixture
def mock_json_response():
    with patch("app.core.global_error_handler.JSONResponse") as mock:
        yield mock

@pytest.fixture
def mock_fastapi_app():
    mock_app = MagicMock(spec=FastAPI)
    mock_app.exception_handler = MagicMock()
    return mock_app

@pytest.fixture
def mock_request():
    request = MagicMock(spec=Request)
    request.method = "POST"
    request.url.path = "/api/subscriptions/1/upgrade"
    return request

# --- Test Cases ---

def test_create_error_response():
    response = create_error_response(status.HTTP_404_NOT_FOUND, "Not Found")
    assert response == {"message": "Not Found", "code": 404}

    response_with_details = create_error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, "Validation Error", {"field": "plan_id"})
    assert response_with_details == {"message": "Validation Error", "code": 422, "details": {"field": "plan_id"}}

@pytest.mark.parametrize(
    "exc, expected",
    [
        (ValidationError("bad plan"), 400),
        (NotFoundError("missing"), 404),
        (InvalidTransitionError("completed", "pending"), 409),
        (ConsistencyError("charged but not updated", charge_transaction_id="ch-1"), 409),
        (ExternalGatewayError("timeout"), 502),
        (GatewayPayloadError("bad body"), 502),
        (SubscriptionError("generic"), 400),
    ],
)
def test_status_for_subscription_error(exc, expected):
    assert status_for_subscription_error(exc) == expected

@pytest.mark.asyncio
async def test_subscription_exception_handler_prefers_user_message(mock_logger, mock_json_response, mock_request):
    exc = NotFoundError("Subscription 9 not found", user_message="המנוי לא נמצא.")

    await subscription_exception_handler(mock_request, exc)

    mock_logger.warning.assert_called_once_with(
        "Subscription Error: Subscription 9 not found for POST /api/subscriptions/1/upgrade"
    )
    mock_json_response.assert_called_once_with(
        status_code=404,
        content={"message": "המנוי לא נמצא.", "code": 404}
    )

@pytest.mark.asyncio
async def test_consistency_error_is_logged_as_critical(mock_logger, mock_json_response, mock_request):
    exc = ConsistencyError("charged but not updated", charge_transaction_id="ch-1")

    await subscription_exception_handler(mock_request, exc)

    mock_logger.critical.assert_called_once()
    assert "ch-1" in mock_logger.critical.call_args.args[0]
    mock_json_response.assert_called_once_with(
        status_code=409,
        content={"message": "charged but not updated", "code": 409}
    )

@pytest.mark.asyncio
async def test_http_exception_handler(mock_logger, mock_json_response):
    mock_request = MagicMock(spec=Request)
    mock_request.method = "GET"
    mock_request.url.path = "/test"

    exc = StarletteHTTPException(status_code=404, detail="Resource not found")

    await http_exception_handler(mock_request, exc)

    mock_logger.warning.assert_called_once_with("HTTP Exception: 404 - Resource not found for GET /test")
    mock_json_response.assert_called_once_with(
        status_code=404,
        content={"message": "Resource not found", "code": 404}
    )

@pytest.mark.asyncio
async def test_validation_exception_handler(mock_logger, mock_json_response):
    mock_request = MagicMock(spec=Request)
    mock_request.method = "POST"
    mock_request.url.path = "/api/subscriptions/payment-request"

    validation_errors = [
        {"loc": ["body", "plan_id"], "msg": "field required", "type": "missing"},
        {"loc": ["query", "attempt_number"], "msg": "Input should be greater than or equal to 1", "type": "greater_than_equal"}
    ]
    exc = RequestValidationError(errors=validation_errors)

    await validation_exception_handler(mock_request, exc)

    mock_logger.warning.assert_called_once()
    mock_json_response.assert_called_once_with(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "message": "Validation failed",
            "code": status.HTTP_422_UNPROCESSABLE_ENTITY,
            "details": {
                "errors": [
                    "Field 'body.plan_id': field required",
                    "Field 'query.attempt_number': Input should be greater than or equal to 1"
                ]
            }
        }
    )

@pytest.mark.asyncio
async def test_general_exception_handler(mock_logger, mock_traceback, mock_json_response):
    mock_request = MagicMock(spec=Request)
    mock_request.method = "GET"
    mock_request.url.path = "/internal"

    exc = ValueError("Something went wrong internally")

    await general_exception_handler(mock_request, exc)

    mock_logger.error.assert_called_once()
    mock_json_response.assert_called_once_with(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"message": "An unexpected internal server error occurred.", "code": 500}
    )

def test_register_global_exception_handlers(mock_fastapi_app):
    register_global_exception_handlers(mock_fastapi_app)

    assert mock_fastapi_app.exception_handler.call_count == 4

    mock_fastapi_app.exception_handler.assert_any_call(SubscriptionError)
    mock_fastapi_app.exception_handler.assert_any_call(StarletteHTTPException)
    mock_fastapi_app.exception_handler.assert_any_call(RequestValidationError)
    mock_fastapi_app.exception_handler.assert_any_call(Exception)
