"""Request observation for the audit core.

The HTTP layer calls interceptors after the response is finalized:

    interceptor.events_for(request, response, elapsed_ms) -> list[AuditEvent]

Interceptors only see the framework-neutral RequestDescriptor and
ResponseDescriptor, so they can be unit tested without an ASGI app.
AuditMiddleware is the Starlette adapter: it times the request, builds the
descriptors, runs every matching interceptor and submits the resulting
events fire-and-forget. An unhandled exception produces an API_ERROR
event and is re-raised unchanged.
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Callable, Sequence
from typing import Any, Protocol

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from src.audit.factory import (
    RequestDescriptor,
    ResponseDescriptor,
    api_request_event,
    auth_event,
    error_event,
    file_event,
    resource_event,
    security_event,
)
from src.audit.models import AuditAction, AuditEvent, AuditStatus, ResourceType
from src.audit.service import AuditService

logger = logging.getLogger(__name__)


class AuditInterceptor(Protocol):
    """Turns one finished request into zero or more audit events."""

    needs_payload: bool

    def matches(self, request: RequestDescriptor) -> bool: ...

    def events_for(
        self,
        request: RequestDescriptor,
        response: ResponseDescriptor,
        elapsed_ms: float,
    ) -> list[AuditEvent]: ...


class ReportedError(Exception):
    """Error message reported in a JSON response body."""


def _outcome(response: ResponseDescriptor) -> AuditStatus:
    return AuditStatus.FAILURE if response.status_code >= 400 else AuditStatus.SUCCESS


def _payload_data(response: ResponseDescriptor) -> Any:
    if isinstance(response.payload, dict):
        return response.payload.get("data")
    return None


def _payload_error(response: ResponseDescriptor) -> str | None:
    if not isinstance(response.payload, dict):
        return None
    error = response.payload.get("error") or response.payload.get("detail")
    return None if error is None else str(error)


class _RouteInterceptor:
    """Matches a set of HTTP methods on a path regex (query string ignored)."""

    needs_payload = True

    def __init__(self, methods: Sequence[str], path: str) -> None:
        self.methods = frozenset(m.upper() for m in methods)
        self.path_pattern = re.compile(path)

    def matches(self, request: RequestDescriptor) -> bool:
        if request.method is None or request.method.upper() not in self.methods:
            return False
        path = (request.path or "").split("?", 1)[0]
        return self.path_pattern.fullmatch(path) is not None


class ApiRequestInterceptor:
    """One LOW priority API_REQUEST event per request under a path prefix."""

    needs_payload = False

    def __init__(self, prefix: str = "/api", exclude: Sequence[str] = ()) -> None:
        self.prefix = prefix
        self.exclude = tuple(exclude)

    def matches(self, request: RequestDescriptor) -> bool:
        path = (request.path or "").split("?", 1)[0]
        return path.startswith(self.prefix) and not path.startswith(self.exclude)

    def events_for(self, request, response, elapsed_ms):
        return [api_request_event(request, response, elapsed_ms, _outcome(response))]


class AuthInterceptor(_RouteInterceptor):
    """Authentication events for sign-in, sign-up and password routes.

    The user is taken from the response payload's data.user when present,
    otherwise from the request.
    """

    def __init__(self, action: AuditAction, methods: Sequence[str], path: str) -> None:
        super().__init__(methods, path)
        self.action = action

    def events_for(self, request, response, elapsed_ms):
        data = _payload_data(response)
        user = data.get("user") if isinstance(data, dict) else None
        message = _payload_error(response)
        return [
            auth_event(
                self.action,
                user or request.user,
                request,
                status=_outcome(response),
                error=ReportedError(message) if message else None,
                status_code=response.status_code,
            )
        ]


class CrudInterceptor(_RouteInterceptor):
    """Mutation events for a domain resource.

    The response payload's data is both the resource and the after
    snapshot. Failed responses are not recorded as mutations.
    """

    def __init__(
        self,
        action: AuditAction,
        resource_type: ResourceType,
        methods: Sequence[str],
        path: str,
    ) -> None:
        super().__init__(methods, path)
        self.action = action
        self.resource_type = resource_type

    def events_for(self, request, response, elapsed_ms):
        if response.status_code >= 400:
            return []
        data = _payload_data(response)
        resource = data if isinstance(data, dict) else dict(request.path_params)
        return [
            resource_event(
                self.action,
                self.resource_type,
                request.user,
                resource,
                request,
                new_data=data,
                status_code=response.status_code,
            )
        ]


class FileInterceptor(_RouteInterceptor):
    """File operation events; file details come from data.file in the payload."""

    def __init__(self, action: AuditAction, methods: Sequence[str], path: str) -> None:
        super().__init__(methods, path)
        self.action = action

    def events_for(self, request, response, elapsed_ms):
        data = _payload_data(response)
        file = data.get("file") if isinstance(data, dict) else None
        if file is None:
            file = {"size": request.content_length}
        message = _payload_error(response)
        return [
            file_event(
                self.action,
                request.user,
                file,
                request,
                status=_outcome(response),
                error=ReportedError(message) if message else None,
                status_code=response.status_code,
            )
        ]


class SecurityInterceptor(_RouteInterceptor):
    """Security events carrying the response's error and message as details.

    With only_failures set, successful responses produce nothing.
    """

    def __init__(
        self,
        action: AuditAction,
        methods: Sequence[str],
        path: str,
        only_failures: bool = False,
    ) -> None:
        super().__init__(methods, path)
        self.action = action
        self.only_failures = only_failures

    def events_for(self, request, response, elapsed_ms):
        if self.only_failures and response.status_code < 400:
            return []
        details: dict[str, Any] = {}
        error = _payload_error(response)
        if error:
            details["error"] = error
        if isinstance(response.payload, dict) and response.payload.get("message"):
            details["message"] = response.payload["message"]
        return [
            security_event(
                self.action, request.user, request, details, status_code=response.status_code
            )
        ]


def collect_events(
    interceptors: Sequence[AuditInterceptor],
    request: RequestDescriptor,
    response: ResponseDescriptor,
    elapsed_ms: float,
) -> list[AuditEvent]:
    """Run every matching interceptor; a failing interceptor is logged and skipped."""
    events: list[AuditEvent] = []
    for interceptor in interceptors:
        if not interceptor.matches(request):
            continue
        try:
            events.extend(interceptor.events_for(request, response, elapsed_ms))
        except Exception:
            logger.exception("Audit interceptor %s failed", type(interceptor).__name__)
    return events


def describe_request(request: Request) -> RequestDescriptor:
    """Build a RequestDescriptor from a Starlette request.

    The session id and user are read from request.state, where the session
    dependency leaves them.
    """
    path = request.url.path
    if request.url.query:
        path = f"{path}?{request.url.query}"
    return RequestDescriptor(
        method=request.method,
        path=path,
        client_host=request.client.host if request.client else None,
        headers={k.lower(): v for k, v in request.headers.items()},
        query_params=dict(request.query_params),
        path_params=dict(request.path_params),
        session_id=getattr(request.state, "session_id", None),
        user=getattr(request.state, "user", None),
    )


async def _buffer_body(response: Response) -> bytes:
    chunks = [
        chunk.encode() if isinstance(chunk, str) else chunk
        async for chunk in response.body_iterator
    ]

    async def replay():
        for chunk in chunks:
            yield chunk

    response.body_iterator = replay()
    return b"".join(chunks)


def _parse_json(body: bytes) -> Any:
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError:
        return None


class AuditMiddleware(BaseHTTPMiddleware):
    """Starlette adapter that feeds interceptor events to the audit service.

    Args:
        app: The wrapped ASGI application
        interceptors: Interceptors run after each response
        service_getter: Returns the active AuditService, or None when audit
            logging is not initialized
    """

    def __init__(
        self,
        app: ASGIApp,
        interceptors: Sequence[AuditInterceptor],
        service_getter: Callable[[], AuditService | None],
    ) -> None:
        super().__init__(app)
        self.interceptors = tuple(interceptors)
        self.service_getter = service_getter

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            elapsed_ms = (time.perf_counter() - start) * 1000
            self._submit(
                [
                    error_event(
                        AuditAction.API_ERROR,
                        getattr(request.state, "user", None),
                        describe_request(request),
                        exc,
                        status_code=500,
                    )
                ]
            )
            logger.debug(
                "Request %s %s failed after %.1fms", request.method, request.url.path, elapsed_ms
            )
            raise

        elapsed_ms = (time.perf_counter() - start) * 1000
        descriptor = describe_request(request)
        matching = [i for i in self.interceptors if i.matches(descriptor)]
        if not matching:
            return response

        payload = None
        content_type = response.headers.get("content-type", "")
        if any(i.needs_payload for i in matching) and "json" in content_type:
            payload = _parse_json(await _buffer_body(response))

        response_descriptor = ResponseDescriptor(
            status_code=response.status_code,
            headers={k.lower(): v for k, v in response.headers.items()},
            payload=payload,
        )
        self._submit(collect_events(matching, descriptor, response_descriptor, elapsed_ms))
        logger.debug(
            "Request %s %s completed with %d in %.1fms",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        return response

    def _submit(self, events: list[AuditEvent]) -> None:
        service = self.service_getter()
        if service is None:
            return
        for event in events:
            service.submit_nowait(event)


def default_interceptors(api_prefix: str = "/api/v1") -> list[AuditInterceptor]:
    """Interceptors for the land registry routes mounted under api_prefix."""
    users = f"{api_prefix}/users"
    interceptors: list[AuditInterceptor] = [
        ApiRequestInterceptor(prefix="/api"),
        AuthInterceptor(AuditAction.USER_SIGNUP, ["POST"], f"{users}/signup"),
        AuthInterceptor(AuditAction.USER_SIGNIN, ["POST"], f"{users}/signin"),
        AuthInterceptor(AuditAction.USER_SIGNOUT, ["GET", "POST"], f"{users}/signout"),
        AuthInterceptor(AuditAction.PASSWORD_CHANGE, ["PATCH"], f"{users}/updateMyPassword"),
        SecurityInterceptor(
            AuditAction.LOGIN_FAILED, ["POST"], f"{users}/signin", only_failures=True
        ),
        CrudInterceptor(
            AuditAction.USER_PROFILE_UPDATE, ResourceType.USER, ["PATCH"], f"{users}/updateMe"
        ),
        FileInterceptor(AuditAction.FILE_UPLOAD, ["POST"], f"{api_prefix}/files"),
        FileInterceptor(AuditAction.FILE_DELETE, ["DELETE"], f"{api_prefix}/files/[^/]+"),
    ]

    crud_routes = (
        ("land", ResourceType.LAND, "LAND"),
        ("listing", ResourceType.LISTING, "LISTING"),
        ("transaction", ResourceType.TRANSACTION, "TRANSACTION"),
    )
    for segment, resource_type, prefix in crud_routes:
        collection = f"{api_prefix}/{segment}"
        item = f"{collection}/[^/]+"
        create, update, delete = (
            AuditAction(f"{prefix}_{verb}") for verb in ("CREATE", "UPDATE", "DELETE")
        )
        interceptors.extend(
            [
                CrudInterceptor(create, resource_type, ["POST"], collection),
                CrudInterceptor(update, resource_type, ["PATCH", "PUT"], item),
                CrudInterceptor(delete, resource_type, ["DELETE"], item),
            ]
        )
    return interceptors
