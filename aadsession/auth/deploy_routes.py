"""FastAPI route delivering deep-link callbacks in web deployments.

Browser-based hosts cannot register an OS URI handler, so the redirect
relay sends the browser to ``GET /auth/callback`` on the host's own web
server instead. The route forwards the full URL to the
:class:`~aadsession.auth.uri_router.UriCallbackRouter` and shows a page
the user can close.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import html
import logging

from typing import TYPE_CHECKING

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse

from .callback_server import ERROR_PAGE, SUCCESS_PAGE
from .uri_router import get_uri_router


if TYPE_CHECKING:
    from .uri_router import UriCallbackRouter


logger = logging.getLogger("aadsession.auth")


def create_callback_router(
    uri_router: UriCallbackRouter | None = None,
    prefix: str = "/auth",
) -> APIRouter:
    """Create the callback router.

    Parameters
    ----------
    uri_router : UriCallbackRouter, optional
        Router receiving the callback URLs (defaults to the process-wide one).
    prefix : str
        Mount prefix of the route (default ``"/auth"``).

    Returns
    -------
    APIRouter
        Router with the ``GET {prefix}/callback`` route.
    """
    target = uri_router or get_uri_router()
    router = APIRouter(prefix=prefix, tags=["authentication"])

    @router.get("/callback")
    async def auth_callback(
        request: Request,
        error: str | None = None,
        error_description: str | None = None,
    ) -> HTMLResponse:
        """Forward the provider redirect to pending logins."""
        target.handle_uri(str(request.url))
        if error:
            logger.info("Login callback carried an error: %s", error)
            safe_msg = html.escape(error_description or error, quote=True)
            return HTMLResponse(
                ERROR_PAGE.format(error=safe_msg),
                headers={"Cache-Control": "no-store"},
            )
        return HTMLResponse(SUCCESS_PAGE, headers={"Cache-Control": "no-store"})

    return router
