import hmac

from fastapi import Header, Request

from shared.models.errors import AuthenticationError


async def verify_admin_key(
    request: Request,
    x_api_key: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> None:
    """Verify the admin key on administrative routes.

    The key is read from ``X-Api-Key`` or a ``Bearer`` authorization header.
    When ``ADMIN_API_KEY`` is not configured the routes are open.

    Args:
        request (Request): The FastAPI request object (provides app.state).
        x_api_key (str | None): The value of the X-Api-Key header.
        authorization (str | None): The value of the Authorization header.

    Raises:
        AuthenticationError: 401 if the key is missing or does not match.
    """
    helper_config = request.app.state.helper_config
    expected_key = helper_config.get_optional_string_val("ADMIN_API_KEY")
    if not expected_key:
        return

    provided = x_api_key
    if not provided and authorization and authorization.lower().startswith("bearer "):
        provided = authorization[7:].strip()
    if not provided or not hmac.compare_digest(provided, expected_key):
        raise AuthenticationError("Invalid or missing API key")
