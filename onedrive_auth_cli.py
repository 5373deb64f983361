#!/usr/bin/env python3
"""Mint a OneDrive / Microsoft Graph token pair with the authorization code flow.

The CLI collects the app registration's credentials (flags, ``OD_*``
environment variables or a ``.env`` file), opens the Microsoft login page in
the browser and waits on a loopback HTTP server for the redirect. The code in
the redirect is exchanged for an access/refresh token pair with a single POST
and the result is rendered back into the browser tab.

With ``--form`` the browser is sent to a local entry form instead, so the
credentials can be typed in rather than passed on the command line.
"""
from __future__ import annotations

import argparse
import dataclasses
import enum
import http.client
import ipaddress
import json
import logging
import os
import platform
import subprocess
import sys
import textwrap
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Protocol, Sequence
from urllib import error as urlerror
from urllib import parse as urlparse
from urllib import request as urlrequest
import webbrowser

from dotenv import dotenv_values
from flask import Flask, Response, redirect, request
from werkzeug.serving import BaseWSGIServer, make_server

logger = logging.getLogger(__name__)

ENV_PREFIX = "OD_"
DEFAULT_ENV_FILE = ".env"
DEFAULT_SCOPE = "Files.ReadWrite offline_access"
DEFAULT_REDIRECT_URI = "http://localhost:6789"
DEFAULT_PORT = 6789
DEFAULT_HOST = "127.0.0.1"
AUTH_ENDPOINT = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/authorize"
TOKEN_ENDPOINT = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
# Some tenants reject token requests from unknown clients; okhttp is accepted.
TOKEN_USER_AGENT = "okhttp/3.6.0"
PLATFORM_COMMANDS: Dict[str, Sequence[str]] = {
    "Darwin": ("open",),
    "Linux": ("xdg-open",),
    "Windows": ("rundll32", "url.dll,FileProtocolHandler"),
}

_PAGE_STYLE = textwrap.dedent(
    """
    body { font-family: system-ui, -apple-system, "Segoe UI", sans-serif; margin: 0; padding: 1.5rem; background: #f3f4f6; color: #111827; }
    main { max-width: 760px; margin: 0 auto; }
    section { background: #ffffff; border-radius: 10px; padding: 1rem; margin-bottom: 1rem; border: 1px solid #e5e7eb; }
    h1 { margin-top: 0; font-size: 1.5rem; }
    label span { display: block; font-size: 0.8rem; color: #6b7280; margin: 0.5rem 0 0.15rem; }
    input, textarea { width: 100%; box-sizing: border-box; font-family: ui-monospace, Menlo, Consolas, monospace; border-radius: 6px; border: 1px solid #d1d5db; padding: 0.5rem; background: #f9fafb; }
    textarea { min-height: 6rem; resize: vertical; }
    button { margin-top: 1rem; padding: 0.45rem 0.9rem; border-radius: 999px; border: 1px solid #2563eb; background: #2563eb; color: #ffffff; cursor: pointer; }
    table { border-collapse: collapse; width: 100%; }
    th { text-align: left; padding: 0.25rem 1rem 0.25rem 0; color: #6b7280; font-weight: 500; white-space: nowrap; }
    td { font-family: ui-monospace, Menlo, Consolas, monospace; word-break: break-all; }
    .error { border-color: #fecaca; background: #fef2f2; }
    """
).strip()

START_FORM_HTML = textwrap.dedent(
    """
    <!doctype html>
    <html lang="en">
    <head>
      <meta charset="utf-8" />
      <title>OneDrive Auth Util</title>
      <style>{{ style }}</style>
    </head>
    <body>
      <main>
        <h1>OneDrive Auth Util</h1>
        <section>
          <p>Enter the app registration details and continue to the Microsoft sign-in page.
          The redirect URI must point back to this helper (port {{ port }}).</p>
          <form id="config-form" method="post" action="/authorize">
            <label><span>Organization (tenant) ID</span>
              <input id="org_id" name="org_id" value="{{ config.org_id }}" autocomplete="off" /></label>
            <label><span>Client ID</span>
              <input id="client_id" name="client_id" value="{{ config.client_id }}" autocomplete="off" /></label>
            <label><span>Client secret</span>
              <input id="client_secret" name="client_secret" type="password" value="{{ config.client_secret }}" autocomplete="off" /></label>
            <label><span>Scope</span>
              <input id="scope" name="scope" value="{{ config.scope }}" autocomplete="off" /></label>
            <label><span>Redirect URI</span>
              <input id="redirect_uri" name="redirect_uri" value="{{ config.redirect_uri }}" autocomplete="off" /></label>
            <button type="submit">Sign in with Microsoft</button>
          </form>
        </section>
      </main>
    </body>
    </html>
    """
).strip()

RESULT_HTML = textwrap.dedent(
    """
    <!doctype html>
    <html lang="en">
    <head>
      <meta charset="utf-8" />
      <title>OneDrive Auth Util - Token</title>
      <style>{{ style }}</style>
    </head>
    <body>
      <main>
        <h1>Token issued</h1>
        <section>
          <table>
            <tr><th>Organization ID</th><td>{{ config.org_id }}</td></tr>
            <tr><th>Client ID</th><td>{{ config.client_id }}</td></tr>
            <tr><th>Redirect URI</th><td>{{ config.redirect_uri }}</td></tr>
            <tr><th>Token type</th><td>{{ token.token_type }}</td></tr>
            <tr><th>Scope</th><td>{{ token.scope }}</td></tr>
            <tr><th>Expires in</th><td>{{ token.expires_in }}</td></tr>
            <tr><th>Ext. expires in</th><td>{{ token.ext_expires_in }}</td></tr>
          </table>
        </section>
        <section>
          <label><span>Access token</span>
            <textarea id="access_token" readonly>{{ token.access_token }}</textarea></label>
          <label><span>Refresh token</span>
            <textarea id="refresh_token" readonly>{{ token.refresh_token }}</textarea></label>
        </section>
      </main>
    </body>
    </html>
    """
).strip()

ERROR_HTML = textwrap.dedent(
    """
    <!doctype html>
    <html lang="en">
    <head>
      <meta charset="utf-8" />
      <title>OneDrive Auth Util - Error</title>
      <style>{{ style }}</style>
    </head>
    <body>
      <main>
        <h1>{{ title }}</h1>
        <section class="error">
          <p>{{ message }}</p>
          {% if detail %}<p>{{ detail }}</p>{% endif %}
          <p><a href="/start">Start again</a></p>
        </section>
      </main>
    </body>
    </html>
    """
).strip()


class AuthFlowError(RuntimeError):
    """Base error for failures that end the current authorization attempt."""


class TokenRequestError(AuthFlowError):
    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"Token endpoint returned HTTP {status}")
        self.status = status
        self.body = body


class ProviderUnreachableError(AuthFlowError):
    pass


class BrowserLaunchError(AuthFlowError):
    pass


@dataclass(frozen=True)
class AuthConfig:
    org_id: str
    client_id: str
    client_secret: str
    scope: str = DEFAULT_SCOPE
    redirect_uri: str = DEFAULT_REDIRECT_URI
    port: int = DEFAULT_PORT


@dataclass
class AccessToken:
    token_type: str = ""
    scope: str = ""
    expires_in: int = 0
    ext_expires_in: int = 0
    access_token: str = ""
    refresh_token: str = ""

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "AccessToken":
        names = {field.name for field in dataclasses.fields(cls)}
        return cls(**{key: value for key, value in payload.items() if key in names})


@dataclass
class HttpResponse:
    status: int
    content_type: str
    payload: str


@dataclass
class EnvDefaults:
    org_id: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    scope: str = DEFAULT_SCOPE
    redirect_uri: str = DEFAULT_REDIRECT_URI
    port: str | int = DEFAULT_PORT
    exit_after_token: bool = False


class CallbackState(enum.Enum):
    AWAITING_CALLBACK = "awaiting-callback"
    RECEIVED = "received"


class AuthFlow:
    """State shared by the callback server's handlers.

    The configuration is only ever replaced, never mutated, so a handler that
    takes a snapshot keeps a consistent view for the rest of its request.
    """

    def __init__(self, config: AuthConfig, timeout: float | None = None) -> None:
        self._config = config
        self._lock = threading.Lock()
        self.timeout = timeout
        self.state = CallbackState.AWAITING_CALLBACK
        self.token: AccessToken | None = None
        self.finished = threading.Event()

    @property
    def config(self) -> AuthConfig:
        with self._lock:
            return self._config

    def update_config(self, **changes: Any) -> AuthConfig:
        with self._lock:
            self._config = dataclasses.replace(self._config, **changes)
            return self._config

    def complete(self, token: AccessToken) -> None:
        with self._lock:
            self.token = token
            self.state = CallbackState.RECEIVED


class BrowserLauncher(Protocol):
    def open(self, url: str) -> None:
        ...


@dataclass
class CommandLauncher:
    """Hand the URL to the operating system's URL opener."""

    command: Sequence[str]

    def open(self, url: str) -> None:
        argv = [*self.command, url]
        logger.debug("Launching browser with %s", argv[0])
        try:
            subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            raise BrowserLaunchError(f"Failed to launch browser with {argv[0]!r}: {exc}") from exc


class WebbrowserLauncher:
    def open(self, url: str) -> None:
        try:
            opened = webbrowser.open(url)
        except webbrowser.Error as exc:
            raise BrowserLaunchError(f"Failed to launch browser: {exc}") from exc
        if not opened:
            raise BrowserLaunchError("No usable browser found by the webbrowser module.")


class NullLauncher:
    def open(self, url: str) -> None:
        print(f"Open this URL in a browser to continue:\n{url}\n")


def select_launcher(choice: str = "system", system: str | None = None) -> BrowserLauncher:
    if choice == "none":
        return NullLauncher()
    if choice == "default":
        return WebbrowserLauncher()
    system = system or platform.system()
    command = PLATFORM_COMMANDS.get(system)
    if command is None:
        raise BrowserLaunchError(
            f"Unsupported platform {system!r}; use --browser default or --browser none."
        )
    return CommandLauncher(command)


def build_authorization_url(config: AuthConfig) -> str:
    # Only the scope is escaped; the remaining values go in exactly as configured.
    base = AUTH_ENDPOINT.format(tenant=config.org_id)
    return (
        f"{base}?client_id={config.client_id}"
        f"&scope={urlparse.quote(config.scope, safe='')}"
        f"&response_type=code"
        f"&redirect_uri={config.redirect_uri}"
    )


def _post_form(
    url: str, data: Dict[str, Any], headers: Dict[str, str], timeout: float | None
) -> HttpResponse:
    encoded = urlparse.urlencode(data).encode("utf-8")
    req = urlrequest.Request(
        url,
        data=encoded,
        headers={"Content-Type": "application/x-www-form-urlencoded", **headers},
        method="POST",
    )
    return _execute(req, timeout)


def _execute(req: urlrequest.Request, timeout: float | None) -> HttpResponse:
    try:
        with urlrequest.urlopen(req, timeout=timeout) as resp:
            return HttpResponse(
                status=resp.status,
                content_type=resp.headers.get("Content-Type", ""),
                payload=resp.read().decode("utf-8", errors="replace"),
            )
    except urlerror.HTTPError as exc:
        return HttpResponse(
            status=exc.code,
            content_type=exc.headers.get("Content-Type", "") if exc.headers else "",
            payload=exc.read().decode("utf-8", errors="replace"),
        )
    except (urlerror.URLError, http.client.HTTPException, OSError) as exc:
        raise ProviderUnreachableError(f"Could not reach {req.full_url}: {exc}") from exc


def exchange_code(code: str, config: AuthConfig, timeout: float | None = None) -> AccessToken:
    data = {
        "client_id": config.client_id,
        "scope": config.scope,
        "code": code,
        "redirect_uri": config.redirect_uri,
        "grant_type": "authorization_code",
        "client_secret": config.client_secret,
    }
    response = _post_form(
        TOKEN_ENDPOINT.format(tenant=config.org_id),
        data,
        headers={"User-Agent": TOKEN_USER_AGENT},
        timeout=timeout,
    )
    if response.status != 200:
        raise TokenRequestError(response.status, response.payload)
    try:
        payload = json.loads(response.payload)
    except json.JSONDecodeError as exc:
        raise TokenRequestError(response.status, response.payload) from exc
    if not isinstance(payload, dict):
        raise TokenRequestError(response.status, response.payload)
    return AccessToken.from_payload(payload)


def create_app(flow: AuthFlow) -> Flask:
    app = Flask(__name__)
    # Compiled up front: a broken template is a packaging defect and must stop startup.
    start_template = app.jinja_env.from_string(START_FORM_HTML)
    result_template = app.jinja_env.from_string(RESULT_HTML)
    error_template = app.jinja_env.from_string(ERROR_HTML)

    def error_page(status: int, title: str, message: str, detail: str | None = None) -> Response:
        body = error_template.render(style=_PAGE_STYLE, title=title, message=message, detail=detail)
        return Response(body, status=status, mimetype="text/html")

    @app.get("/")
    def callback() -> Response:
        code = request.args.get("code", "")
        if not code:
            provider_error = request.args.get("error")
            description = request.args.get("error_description")
            if provider_error:
                logger.warning("Authorization failed: %s %s", provider_error, description or "")
            return error_page(
                400,
                "Invalid authentication",
                "The redirect did not include an authorization code.",
                detail=description,
            )

        config = flow.config
        logger.info("Authorization code received; exchanging it for a token")
        try:
            token = exchange_code(code, config, timeout=flow.timeout)
        except TokenRequestError as exc:
            logger.error("Token endpoint returned HTTP %s: %s", exc.status, exc.body)
            return error_page(
                500,
                "Token request failed",
                "The token endpoint rejected the authorization code. Check the console for details.",
            )
        except ProviderUnreachableError as exc:
            logger.error("%s", exc)
            return error_page(
                502,
                "Identity provider unreachable",
                "The token endpoint could not be contacted. Check your network connection.",
            )

        flow.complete(token)
        logger.info("Token issued (type %s, expires in %ss)", token.token_type, token.expires_in)
        response = Response(
            result_template.render(style=_PAGE_STYLE, token=token, config=config),
            mimetype="text/html",
        )
        response.call_on_close(flow.finished.set)
        return response

    @app.get("/start")
    def start() -> str:
        config = flow.config
        return start_template.render(style=_PAGE_STYLE, config=config, port=config.port)

    @app.post("/authorize")
    def authorize() -> Any:
        current = flow.config
        changes = {
            name: request.form.get(name, getattr(current, name))
            for name in ("org_id", "client_id", "client_secret", "scope", "redirect_uri")
        }
        config = flow.update_config(**changes)
        url = build_authorization_url(config)
        logger.info("Redirecting to %s", url)
        return redirect(url, code=301)

    return app


def serve(
    flow: AuthFlow,
    launcher: BrowserLauncher,
    host: str = DEFAULT_HOST,
    form: bool = False,
    exit_after_token: bool = False,
) -> None:
    config = flow.config
    app = create_app(flow)
    try:
        server: BaseWSGIServer = make_server(host, config.port, app, threaded=True)
    except OSError as exc:
        raise AuthFlowError(f"Unable to listen on {host}:{config.port}: {exc}") from exc

    # The listener is bound before the browser starts so the redirect cannot beat it.
    if form:
        target = f"http://{host}:{config.port}/start"
    else:
        target = build_authorization_url(config)
    logger.info("Listening on http://%s:%s", host, config.port)
    logger.info("%s", target)
    thread: threading.Thread | None = None
    try:
        launcher.open(target)
        if exit_after_token:
            thread = threading.Thread(target=server.serve_forever, daemon=True)
            thread.start()
            flow.finished.wait()
            server.shutdown()
            thread.join()
            logger.info("Token issued; shutting down")
        else:
            print("Waiting for the redirect. Press Ctrl+C to stop.")
            server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down")
        if thread is not None:
            server.shutdown()
            thread.join()
    finally:
        server.server_close()


def _determine_env_file(argv: List[str]) -> str:
    env_file = DEFAULT_ENV_FILE
    args = iter(argv)
    for arg in args:
        if arg in ("--env-file", "-e"):
            env_file = next(args, env_file)
        elif arg.startswith(("--env-file=", "-e=")):
            env_file = arg.split("=", 1)[1]
    return env_file


def _is_loopback(host: str) -> bool:
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def _env_flag(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


def _load_env_defaults(env_file: str, environ: Mapping[str, str] | None = None) -> EnvDefaults:
    values: Dict[str, str | None] = {}
    path = Path(env_file)
    if path.exists():
        values.update(dotenv_values(path))
    environ = os.environ if environ is None else environ
    values.update((key, value) for key, value in environ.items() if key.startswith(ENV_PREFIX))
    return EnvDefaults(
        org_id=values.get("OD_ORG_ID"),
        client_id=values.get("OD_CLIENT_ID"),
        client_secret=values.get("OD_CLIENT_SECRET"),
        scope=values.get("OD_SCOPE") or DEFAULT_SCOPE,
        redirect_uri=values.get("OD_REDIRECT_URI") or DEFAULT_REDIRECT_URI,
        port=values.get("OD_PORT") or DEFAULT_PORT,
        exit_after_token=_env_flag(values.get("OD_EXIT_AFTER_TOKEN")),
    )


def build_parser(defaults: EnvDefaults, env_file: str) -> argparse.ArgumentParser:
    description = textwrap.dedent(
        """
        Acquire an access/refresh token pair for OneDrive (Microsoft Graph) using the
        OAuth 2.0 authorization code flow.

          1. The Microsoft sign-in page opens in your browser.
          2. After consent, the browser is redirected to a local callback server.
          3. The authorization code is exchanged and the tokens are shown in the browser.

        Every option can also be set with an OD_* environment variable or in the env file.
        """
    ).strip()
    parser = argparse.ArgumentParser(
        prog="onedrive-auth",
        description=description,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--env-file",
        "-e",
        default=env_file,
        help="Path to a .env file with OD_* settings (default: %(default)s).",
    )
    parser.add_argument(
        "--org-id",
        default=defaults.org_id,
        help="Organization (tenant) ID of the app registration [OD_ORG_ID].",
    )
    parser.add_argument(
        "--client-id",
        default=defaults.client_id,
        help="Application client ID [OD_CLIENT_ID].",
    )
    parser.add_argument(
        "--client-secret",
        default=defaults.client_secret,
        help="Application client secret [OD_CLIENT_SECRET].",
    )
    parser.add_argument(
        "--scope",
        default=defaults.scope,
        help="Space separated scopes to request [OD_SCOPE] (default: %(default)s).",
    )
    parser.add_argument(
        "--redirect-uri",
        default=defaults.redirect_uri,
        help="Redirect URI registered for the app [OD_REDIRECT_URI] (default: %(default)s).",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=defaults.port,
        help="Port of the local callback server [OD_PORT] (default: %(default)s).",
    )
    parser.add_argument(
        "--host",
        default=DEFAULT_HOST,
        help=(
            "Loopback address (127.0.0.1, ::1 or localhost) to bind the callback "
            "server to (default: %(default)s)."
        ),
    )
    parser.add_argument(
        "--form",
        action="store_true",
        help="Open a local entry form instead of passing credentials on the command line.",
    )
    parser.add_argument(
        "--browser",
        choices=("system", "default", "none"),
        default="system",
        help=(
            "How to open the browser: 'system' uses the OS URL opener, 'default' the "
            "Python webbrowser module, 'none' only prints the URL (default: %(default)s)."
        ),
    )
    parser.add_argument(
        "--exit-after-token",
        action=argparse.BooleanOptionalAction,
        default=defaults.exit_after_token,
        help="Stop the callback server once a token has been issued [OD_EXIT_AFTER_TOKEN].",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Timeout in seconds for the token request (default: wait indefinitely).",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging.",
    )
    return parser


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        stream=sys.stdout,
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )


def config_from_args(args: argparse.Namespace) -> AuthConfig:
    return AuthConfig(
        org_id=args.org_id or "",
        client_id=args.client_id or "",
        client_secret=args.client_secret or "",
        scope=args.scope,
        redirect_uri=args.redirect_uri,
        port=args.port,
    )


def main(argv: List[str] | None = None) -> None:
    if argv is None:
        argv = sys.argv[1:]
    env_file = _determine_env_file(argv)
    defaults = _load_env_defaults(env_file)
    parser = build_parser(defaults, env_file)
    args = parser.parse_args(argv)
    if not args.form:
        missing = [
            flag
            for flag, value in (
                ("--org-id", args.org_id),
                ("--client-id", args.client_id),
                ("--client-secret", args.client_secret),
            )
            if not value
        ]
        if missing:
            parser.error(
                f"the following arguments are required: {', '.join(missing)} "
                "(or use --form to enter them in the browser)"
            )
    # /start echoes the client secret, so the listener never leaves the host.
    if not _is_loopback(args.host):
        parser.error(f"--host must be a loopback address, got {args.host!r}")
    _configure_logging(args.verbose)
    flow = AuthFlow(config_from_args(args), timeout=args.timeout)
    try:
        launcher = select_launcher(args.browser)
        serve(
            flow,
            launcher,
            host=args.host,
            form=args.form,
            exit_after_token=args.exit_after_token,
        )
    except RuntimeError as exc:
        logger.error("%s", exc)
        parser.exit(status=1, message=f"{exc}\n")
    if flow.token is None and args.exit_after_token:
        parser.exit(status=1, message="No token was issued.\n")


if __name__ == "__main__":
    main()
