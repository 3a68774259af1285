# src/claude_usage_core/auth_flow.py

import asyncio
import base64
import hashlib
import html
import logging
import secrets
import socket
import time
import webbrowser
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlencode

import httpx
from aiohttp import web
from rich.console import Console
from rich.markup import escape as rich_escape
from rich.panel import Panel
from rich.text import Text

from .error_handler import AuthenticationError, extract_error_message
from .models import OAuthCredential, PKCEPair, format_timestamp, parse_timestamp, utc_now
from .utils.headless_detection import is_headless_environment

lib_logger = logging.getLogger("claude_usage_core")

OAUTH_CLIENT_ID = "9d1c250a-e61b-44d9-88ed-5944d1962f5e"
OAUTH_AUTHORIZE_URL = "https://claude.ai/oauth/authorize"
OAUTH_TOKEN_URL = "https://platform.claude.com/v1/oauth/token"
CREATE_API_KEY_URL = "https://api.anthropic.com/api/oauth/claude_cli/create_api_key"
OAUTH_SCOPES = "user:profile user:inference user:sessions:claude_code user:mcp_servers"
DEFAULT_BETA_VERSION = "oauth-2025-04-20"

CALLBACK_PATH = "/callback"
CALLBACK_HOST = "127.0.0.1"
DEFAULT_AUTH_TIMEOUT = 120.0
DEFAULT_EXPIRES_IN = 3600

SUCCESS_HTML = """<!DOCTYPE html>
<html><head><title>Authenticated</title></head>
<body style="font-family:system-ui;display:flex;justify-content:center;align-items:center;height:100vh;margin:0">
<div style="text-align:center"><h1>Authenticated</h1><p>You can close this tab.</p></div>
</body></html>"""

FAILURE_HTML = """<!DOCTYPE html>
<html><head><title>Authentication failed</title></head>
<body style="font-family:system-ui;display:flex;justify-content:center;align-items:center;height:100vh;margin:0">
<div style="text-align:center"><h1>Authentication failed</h1><p>{reason}</p><p>Return to the terminal and try again.</p></div>
</body></html>"""

console = Console()

BrowserOpener = Callable[[str], None]


def _base64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_pkce() -> PKCEPair:
    """Generates an S256 PKCE pair from 32 random bytes."""
    code_verifier = _base64url(secrets.token_bytes(32))
    code_challenge = _base64url(hashlib.sha256(code_verifier.encode("ascii")).digest())
    return PKCEPair(code_verifier=code_verifier, code_challenge=code_challenge)


def create_state_token() -> str:
    return _base64url(secrets.token_bytes(32))


def open_in_browser(url: str) -> None:
    """
    Default opener: prints the URL panel and tries the system browser.

    In a headless environment the browser is not attempted; the user opens
    the printed URL on another machine.
    """
    is_headless = is_headless_environment()
    if is_headless:
        panel_text = Text.from_markup(
            "Running in headless environment (no GUI detected).\n"
            "Please open the URL below in a browser to authorize this account."
        )
    else:
        panel_text = Text.from_markup(
            "1. Your browser will now open to log in and authorize access.\n"
            "2. If it doesn't open automatically, please open the URL below manually."
        )
    console.print(Panel(panel_text, title="OAuth Authorization", style="bold blue"))
    console.print(f"[bold]URL:[/bold] [link={url}]{rich_escape(url)}[/link]\n")

    if not is_headless:
        try:
            webbrowser.open(url)
            lib_logger.info("Browser opened successfully for OAuth flow")
        except Exception as e:
            lib_logger.warning(
                f"Failed to open browser automatically: {e}. Please open the URL manually."
            )


class OAuthCallbackServer:
    """
    Single-use loopback listener for the OAuth redirect.

    Only GET /callback is routed (anything else is a 404 and leaves the flow
    pending). The first callback settles the flow: a provider error, a state
    mismatch or a missing code fail it with a 400 page; a valid code gets the
    confirmation page immediately while `on_code` runs as a background task
    whose outcome settles the flow.

    Settlement happens exactly once, guarded by `_settled`; the timeout in
    wait() and the callback handler both go through `_settle()`, so whichever
    fires second is a no-op.
    """

    def __init__(
        self,
        expected_state: str,
        on_code: Callable[[str], Awaitable[Any]],
        host: str = CALLBACK_HOST,
    ):
        self.host = host
        self.expected_state = expected_state
        self._on_code = on_code
        self.app = web.Application()
        self.app.router.add_get(CALLBACK_PATH, self._handle_callback)
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.SockSite] = None
        self.port: Optional[int] = None
        self._settled = False
        self._result_future: Optional[asyncio.Future] = None
        self._exchange_task: Optional[asyncio.Task] = None
        self._stopped = False

    @property
    def redirect_uri(self) -> str:
        return f"http://localhost:{self.port}{CALLBACK_PATH}"

    @property
    def settled(self) -> bool:
        return self._settled

    async def start(self) -> int:
        """Binds an ephemeral loopback port and starts serving. Returns the port."""
        self._result_future = asyncio.get_running_loop().create_future()

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind((self.host, 0))
        except OSError:
            sock.close()
            raise
        self.port = sock.getsockname()[1]

        self.runner = web.AppRunner(self.app, access_log=None, shutdown_timeout=1.0)
        await self.runner.setup()
        self.site = web.SockSite(self.runner, sock)
        await self.site.start()
        lib_logger.debug(f"OAuth callback server started on port {self.port}")
        return self.port

    async def stop(self):
        """Closes the listener and any accepted sockets. Safe to call twice."""
        if self._stopped:
            return
        self._stopped = True
        if self._exchange_task and not self._exchange_task.done():
            self._exchange_task.cancel()
        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()
        lib_logger.debug("OAuth callback server stopped")

    def _settle(self, result: Any = None, error: Optional[BaseException] = None) -> bool:
        if self._settled:
            return False
        self._settled = True
        if self._result_future is not None and not self._result_future.done():
            if error is not None:
                self._result_future.set_exception(error)
            else:
                self._result_future.set_result(result)
        return True

    def _fail_response(self, reason: str) -> web.Response:
        return web.Response(
            status=400,
            text=FAILURE_HTML.format(reason=html.escape(reason)),
            content_type="text/html",
        )

    async def _handle_callback(self, request: web.Request) -> web.Response:
        if self._settled:
            return self._fail_response("This authorization request has already completed.")

        query = request.query

        error = query.get("error")
        if error:
            lib_logger.error(f"OAuth callback received error: {error}")
            self._settle(error=AuthenticationError(f"OAuth error: {error}"))
            return self._fail_response(f"Error: {error}")

        if query.get("state") != self.expected_state:
            lib_logger.error("OAuth state mismatch in callback")
            self._settle(error=AuthenticationError("OAuth state mismatch"))
            return self._fail_response("State mismatch.")

        code = query.get("code")
        if not code:
            lib_logger.error("OAuth callback missing authorization code")
            self._settle(error=AuthenticationError("OAuth callback missing code"))
            return self._fail_response("Missing authorization code.")

        # Claim the flow now so a second callback can't start another exchange
        self._settled = True
        self._exchange_task = asyncio.create_task(self._run_exchange(code))
        return web.Response(text=SUCCESS_HTML, content_type="text/html")

    async def _run_exchange(self, code: str):
        try:
            result = await self._on_code(code)
        except asyncio.CancelledError:
            raise
        except AuthenticationError as e:
            if not self._result_future.done():
                self._result_future.set_exception(e)
            return
        except Exception as e:
            lib_logger.error(f"OAuth token exchange raised: {e}")
            if not self._result_future.done():
                self._result_future.set_exception(
                    AuthenticationError(f"OAuth token exchange failed: {e}")
                )
            return
        if not self._result_future.done():
            self._result_future.set_result(result)

    async def wait(self, timeout: float) -> Any:
        """
        Waits for the flow to settle.

        Raises:
            AuthenticationError: On timeout, or whatever the callback settled with
        """
        try:
            return await asyncio.wait_for(asyncio.shield(self._result_future), timeout=timeout)
        except asyncio.TimeoutError:
            if self._settle(error=AuthenticationError("OAuth authorization timed out")):
                self._result_future.exception()  # mark retrieved
                raise AuthenticationError("OAuth authorization timed out") from None
            # A valid callback arrived but the token exchange outlived the deadline
            raise AuthenticationError(
                "OAuth authorization timed out during token exchange"
            ) from None


class AuthorizationFlow:
    """
    Browser-based OAuth authorization code flow with PKCE.

    authorize() binds a loopback listener on an ephemeral port, hands the
    authorization URL to the opener, waits for the redirect, exchanges the
    code (with the PKCE verifier) for tokens and optionally upgrades the
    short-lived access token to a long-lived one. The result is a serialized
    OAuth credential blob.

    Every failure (listener bind, timeout, callback validation, token
    exchange) surfaces as AuthenticationError. Nothing is retried.
    """

    def __init__(
        self,
        client_id: str = OAUTH_CLIENT_ID,
        authorize_url: str = OAUTH_AUTHORIZE_URL,
        token_url: str = OAUTH_TOKEN_URL,
        create_api_key_url: str = CREATE_API_KEY_URL,
        scopes: str = OAUTH_SCOPES,
        beta_version: str = DEFAULT_BETA_VERSION,
        http_timeout: float = 30.0,
    ):
        self.client_id = client_id
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.create_api_key_url = create_api_key_url
        self.scopes = scopes
        self.beta_version = beta_version
        self.http_timeout = http_timeout

    def build_authorize_url(self, redirect_uri: str, pkce: PKCEPair, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "scope": self.scopes,
            "code_challenge": pkce.code_challenge,
            "code_challenge_method": "S256",
            "state": state,
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    async def authorize(
        self,
        timeout: float = DEFAULT_AUTH_TIMEOUT,
        opener: Optional[BrowserOpener] = None,
        require_long_lived: bool = False,
    ) -> str:
        """
        Runs the full flow and returns the credential blob.

        Args:
            timeout: Seconds from listener bind until the flow must be settled
            opener: Receives the authorization URL; defaults to open_in_browser
            require_long_lived: Fail instead of falling back to the short-lived
                token when the long-lived upgrade fails

        Raises:
            AuthenticationError: On any failure
        """
        interactive = opener is None
        opener = opener or open_in_browser
        pkce = generate_pkce()
        state = create_state_token()
        server: Optional[OAuthCallbackServer] = None

        async def on_code(code: str) -> str:
            return await self._complete_authorization(
                code, pkce, state, server.redirect_uri, require_long_lived
            )

        server = OAuthCallbackServer(expected_state=state, on_code=on_code)
        try:
            try:
                await server.start()
            except OSError as e:
                raise AuthenticationError(f"Failed to start OAuth callback listener: {e}") from e
            started = time.monotonic()

            auth_url = self.build_authorize_url(server.redirect_uri, pkce, state)
            lib_logger.info("Opening browser for authentication...")
            lib_logger.debug(f"Authorization URL: {auth_url}")
            opener(auth_url)

            remaining = max(0.0, timeout - (time.monotonic() - started))
            if interactive:
                with console.status(
                    "[bold green]Waiting for you to complete authentication in the browser..."
                ):
                    blob = await server.wait(remaining)
            else:
                blob = await server.wait(remaining)
            lib_logger.info(
                f"OAuth authorization completed in {time.monotonic() - started:.1f}s"
            )
            return blob
        finally:
            await server.stop()

    async def _complete_authorization(
        self,
        code: str,
        pkce: PKCEPair,
        state: str,
        redirect_uri: str,
        require_long_lived: bool,
    ) -> str:
        lib_logger.info("Received authorization code, exchanging for tokens...")
        token_data = await self._exchange_code_for_tokens(code, pkce, state, redirect_uri)

        access_token = token_data["access_token"]
        expires_in = token_data["expires_in"]
        expires_at = format_timestamp(utc_now() + timedelta(seconds=expires_in))

        try:
            long_lived = await self._create_long_lived_token(access_token)
            access_token = long_lived["token"]
            expires_at = long_lived["expires_at"] or expires_at
        except Exception as e:
            if require_long_lived:
                raise AuthenticationError(f"Failed to create long-lived token: {e}") from e
            lib_logger.warning(
                f"Long-lived token creation failed, keeping short-lived token: {e}"
            )

        return OAuthCredential(
            access_token=access_token,
            refresh_token=token_data.get("refresh_token"),
            expires_at=expires_at,
        ).to_blob()

    async def _exchange_code_for_tokens(
        self, code: str, pkce: PKCEPair, state: str, redirect_uri: str
    ) -> Dict[str, Any]:
        payload = {
            "grant_type": "authorization_code",
            "client_id": self.client_id,
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": pkce.code_verifier,
            "state": state,
        }
        try:
            async with httpx.AsyncClient(timeout=self.http_timeout) as client:
                response = await client.post(self.token_url, json=payload)
        except httpx.RequestError as e:
            raise AuthenticationError(f"Token exchange failed: {e}") from e

        if not response.is_success:
            lib_logger.error(
                f"Token exchange failed: {response.status_code} {response.text}"
            )
            raise AuthenticationError(
                f"Token exchange failed: HTTP {response.status_code} {response.text}".strip(),
                status_code=response.status_code,
            )

        try:
            token_data = response.json()
            access_token = token_data.get("access_token")
            expires_in = token_data.get("expires_in")
            expires_in = DEFAULT_EXPIRES_IN if expires_in is None else int(expires_in)
        except (ValueError, TypeError, AttributeError) as e:
            raise AuthenticationError(f"Invalid token response: {e}") from e
        if not access_token:
            raise AuthenticationError("Missing access_token in token response")
        return {**token_data, "access_token": access_token, "expires_in": expires_in}

    async def _create_long_lived_token(self, access_token: str) -> Dict[str, Optional[str]]:
        """Trades a short-lived access token for a long-lived key (~1 year)."""
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "anthropic-beta": self.beta_version,
        }
        body = {"name": f"claude-usage-{int(time.time() * 1000)}"}
        async with httpx.AsyncClient(timeout=self.http_timeout) as client:
            response = await client.post(self.create_api_key_url, headers=headers, json=body)

        if not response.is_success:
            raise AuthenticationError(
                f"HTTP {response.status_code} {extract_error_message(response)}".strip(),
                status_code=response.status_code,
            )

        try:
            data = response.json()
            key = data.get("key")
            raw_expires_at = data.get("expires_at")
        except (ValueError, AttributeError) as e:
            raise AuthenticationError(f"Invalid long-lived token response: {e}") from e
        if not key:
            raise AuthenticationError("Missing key in long-lived token response")
        expires_at = parse_timestamp(raw_expires_at)
        return {
            "token": key,
            "expires_at": format_timestamp(expires_at) if expires_at else None,
        }


async def authorize(
    timeout: float = DEFAULT_AUTH_TIMEOUT,
    opener: Optional[BrowserOpener] = None,
    require_long_lived: bool = False,
) -> str:
    """Runs an AuthorizationFlow with default endpoints."""
    return await AuthorizationFlow().authorize(
        timeout=timeout, opener=opener, require_long_lived=require_long_lived
    )
