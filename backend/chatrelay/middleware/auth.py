from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from chatrelay.services.credentials import identity_for

API_KEY_HEADER = "X-API-Key"


class ApiKeyAuthMiddleware(BaseHTTPMiddleware):
    """
    Derive the caller identity from X-API-Key.

    The API stays public: requests without a key run as guests and must bring
    their own provider credential in the request body.
    """

    async def dispatch(self, request: Request, call_next):
        api_key = request.headers.get(API_KEY_HEADER)
        request.state.identity = identity_for(api_key) if api_key else None
        return await call_next(request)
