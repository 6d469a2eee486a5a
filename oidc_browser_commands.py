"""Chainable Playwright commands for testing OAuth/OIDC authorization flows.

The helpers build authorization request URLs, drive the browser under test to
the authorization endpoint, read the ``id_token`` returned in a URL fragment
and decode JWT claims. They are registered by name into a command table so a
test can chain them against a Playwright page::

    register_commands()
    Chain(page).build_authorization_url(params).start_authorization()
    claims = Chain(page).visit(callback_url).get_id_token_claims().subject

Claims are decoded, NOT verified. Nothing here checks a token signature, so
decoded claims must never be trusted outside of a test run.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
import re
import textwrap
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Tuple, Union
from urllib import parse as urlparse

from dotenv import dotenv_values
from flask import Flask

logger = logging.getLogger(__name__)

DEFAULT_RESPONSE_TYPE = "code"
DEFAULT_PROMPT = "login"
DEFAULT_ENV_FILE = ".env"
EXTRA_PARAM_PREFIX = "extra_param_"
PREV_SUBJECT_OPTIONAL = "optional"
ID_TOKEN_PARAMETER = "id_token"
CALLBACK_PAGE_TITLE = "OIDC Test Callback"
CALLBACK_PAGE_HTML = textwrap.dedent(
    """
    <!doctype html>
    <html lang="en">
    <head>
      <meta charset="utf-8" />
      <title>{title}</title>
    </head>
    <body>
      <h1>{title}</h1>
      <p>Landing page for authorization redirects. The response is carried in the URL fragment.</p>
    </body>
    </html>
    """
)

ExtraParams = Union[Mapping[str, str], Iterable[Tuple[str, str]]]


class CommandError(AssertionError):
    """Base class for failures raised by the browser commands."""


class InvalidURLError(CommandError):
    """The authorization base URL is not an absolute URL."""


class MissingParametersError(CommandError):
    """Required authorization parameters were not supplied."""


class MalformedTokenError(CommandError):
    """A JWT or fragment token is missing, empty or undecodable."""


class JSONParseError(CommandError):
    """A decoded JWT payload is not valid JSON."""


@dataclass
class AuthorizationURLParameters:
    base_url: str
    client_id: str
    response_type: str | None = None
    redirect_uri: str | None = None
    scope: str | None = None
    state: str | None = None
    prompt: str | None = None
    extra_params: ExtraParams | None = None


@dataclass(frozen=True)
class AuthorizationURL:
    value: str

    def __str__(self) -> str:
        return self.value

    def query_params(self) -> List[Tuple[str, str]]:
        """Return the query string as ordered pairs, repeated keys included."""
        query = urlparse.urlsplit(self.value).query
        return urlparse.parse_qsl(query, keep_blank_values=True)

    def query(self) -> Dict[str, List[str]]:
        query = urlparse.urlsplit(self.value).query
        return urlparse.parse_qs(query, keep_blank_values=True)


@dataclass
class Command:
    name: str
    func: Callable[..., Any]
    prev_subject: str | None = None


@dataclass
class CommandTable:
    """Named commands that a :class:`Chain` can dispatch."""

    _commands: Dict[str, Command] = field(default_factory=dict)

    def add(
        self,
        name: str,
        func: Callable[..., Any],
        prev_subject: str | None = None,
    ) -> Command:
        if prev_subject not in (None, PREV_SUBJECT_OPTIONAL):
            raise ValueError(
                f"Unsupported prev_subject {prev_subject!r} for command `{name}`. "
                f"Use None or {PREV_SUBJECT_OPTIONAL!r}."
            )
        if name in self._commands:
            logger.debug("Overwriting command %s", name)
        command = Command(name=name, func=func, prev_subject=prev_subject)
        self._commands[name] = command
        return command

    def get(self, name: str) -> Command | None:
        return self._commands.get(name)

    def names(self) -> List[str]:
        return list(self._commands)

    def __contains__(self, name: object) -> bool:
        return name in self._commands


COMMANDS = CommandTable()


class Chain:
    """A page plus the subject yielded by the previous command.

    Registered commands are resolved by attribute access. Each call returns a
    new chain whose subject is the command's result, so commands compose
    left to right the way a test reads.
    """

    def __init__(self, page: Any, subject: Any = None, commands: CommandTable | None = None) -> None:
        self._page = page
        self._subject = subject
        self._commands = COMMANDS if commands is None else commands

    @property
    def page(self) -> Any:
        return self._page

    @property
    def subject(self) -> Any:
        return self._subject

    @property
    def commands(self) -> CommandTable:
        return self._commands

    def _wrap(self, subject: Any) -> "Chain":
        return Chain(self._page, subject, self._commands)

    def visit(self, url: Any) -> "Chain":
        target = str(url)
        logger.info("Navigating to %s", _redact_url(target))
        return self._wrap(self._page.goto(target))

    def hash(self) -> "Chain":
        return self._wrap(_location_hash(self._page.url))

    def then(self, func: Callable[[Any], Any]) -> "Chain":
        result = func(self._subject)
        return self._wrap(self._subject if result is None else result)

    def its(self, key: str) -> "Chain":
        if isinstance(self._subject, Mapping):
            if key not in self._subject:
                raise CommandError(f"Subject has no property `{key}`.")
            return self._wrap(self._subject[key])
        if not hasattr(self._subject, key):
            raise CommandError(f"Subject has no property `{key}`.")
        return self._wrap(getattr(self._subject, key))

    def __getattr__(self, name: str) -> Callable[..., "Chain"]:
        if name.startswith("_"):
            raise AttributeError(name)
        command = self._commands.get(name)
        if command is None:
            raise AttributeError(f"No command named `{name}` is registered.")

        def invoke(*args: Any) -> "Chain":
            if command.prev_subject:
                result = command.func(self, self._subject, *args)
            else:
                result = command.func(self, *args)
            return self._wrap(result)

        invoke.__name__ = name
        return invoke

    def __repr__(self) -> str:
        return f"Chain(subject={self._subject!r})"


def _redact_url(url: str) -> str:
    parts = urlparse.urlsplit(url)
    if not parts.fragment:
        return url
    return urlparse.urlunsplit(parts._replace(fragment="<redacted>"))


def _location_hash(url: str) -> str:
    fragment = urlparse.urlsplit(url).fragment
    return f"#{fragment}" if fragment else ""


def _coerce_parameters(parameters: Any) -> AuthorizationURLParameters:
    if isinstance(parameters, AuthorizationURLParameters):
        return parameters
    if isinstance(parameters, Mapping):
        try:
            return AuthorizationURLParameters(**parameters)
        except TypeError as exc:
            raise MissingParametersError(f"Invalid authorization parameters: {exc}") from exc
    raise MissingParametersError(
        "Authorization parameters must be an AuthorizationURLParameters instance or a mapping."
    )


def _extra_param_items(extra_params: ExtraParams | None) -> Iterable[Tuple[str, str]]:
    if not extra_params:
        return []
    if isinstance(extra_params, Mapping):
        return list(extra_params.items())
    return list(extra_params)


def build_authorization_url(parameters: Any) -> AuthorizationURL:
    params = _coerce_parameters(parameters)
    if not params.base_url:
        raise InvalidURLError("An authorization base URL is required.")
    if not params.client_id:
        raise MissingParametersError("A client ID is required to build the authorization URL.")
    try:
        parts = urlparse.urlsplit(params.base_url)
    except ValueError as exc:
        raise InvalidURLError(f"Invalid authorization base URL {params.base_url!r}: {exc}") from exc
    if not parts.scheme or not parts.netloc:
        raise InvalidURLError(
            f"Authorization base URL {params.base_url!r} must be absolute (scheme and host)."
        )

    query = urlparse.parse_qsl(parts.query, keep_blank_values=True)
    query.append(("client_id", params.client_id))
    query.append(("response_type", params.response_type or DEFAULT_RESPONSE_TYPE))
    query.append(("prompt", params.prompt or DEFAULT_PROMPT))
    if params.redirect_uri:
        query.append(("redirect_uri", params.redirect_uri))
    if params.scope:
        query.append(("scope", params.scope))
    if params.state:
        query.append(("state", params.state))
    for key, value in _extra_param_items(params.extra_params):
        query.append((key, value))

    url = urlparse.urlunsplit(parts._replace(query=urlparse.urlencode(query)))
    return AuthorizationURL(url)


def start_authorization(page: Any, subject: Any = None, parameters: Any = None) -> Any:
    """Navigate ``page`` to the authorization endpoint.

    A previously built :class:`AuthorizationURL` passed as ``subject`` wins;
    otherwise the URL is built from ``parameters``.
    """
    if isinstance(subject, AuthorizationURL):
        url = subject
    elif parameters is not None:
        url = build_authorization_url(parameters)
    else:
        raise MissingParametersError(
            "start_authorization needs either an AuthorizationURL subject or authorization parameters."
        )
    return Chain(page).visit(url).subject


def _decode_jwt_payload(token: str) -> str:
    segments = token.split(".")
    payload = segments[1] if len(segments) > 1 else ""
    if not payload:
        raise MalformedTokenError("JWT has no payload segment.")

    # Only the first occurrence of each URL-safe character is translated.
    payload = payload.replace("-", "+", 1).replace("_", "/", 1)
    payload += "=" * (-len(payload) % 4)
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedTokenError(f"JWT payload is not valid base64: {exc}") from exc
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedTokenError(f"JWT payload is not valid UTF-8: {exc}") from exc


def decode_jwt(subject: Any = None, jwt: str | None = None) -> Any:
    """Decode the claims of a compact JWT without verifying its signature.

    A string ``subject`` (the previous chain subject) takes precedence over
    the explicit ``jwt`` argument.
    """
    token = subject if isinstance(subject, str) else jwt
    if not token:
        raise MalformedTokenError("No JWT was supplied to decode.")
    text = _decode_jwt_payload(token)
    try:
        claims = json.loads(text)
    except json.JSONDecodeError as exc:
        raise JSONParseError(f"JWT payload is not valid JSON: {exc}") from exc
    logger.debug("Decoded JWT payload with %d claims", len(claims) if isinstance(claims, dict) else 0)
    return claims


def get_id_token(page: Any) -> str:
    location_hash = _location_hash(page.url)
    logger.debug("Reading %s from the URL fragment", ID_TOKEN_PARAMETER)
    if not location_hash or "#" not in location_hash:
        raise MalformedTokenError(f"Current URL has no fragment: expected `{ID_TOKEN_PARAMETER}` in it.")
    if ID_TOKEN_PARAMETER not in location_hash:
        raise MalformedTokenError(f"URL fragment does not contain `{ID_TOKEN_PARAMETER}`.")

    fragment = location_hash.split("#")[1]
    id_token = None
    for parameter in fragment.split("&"):
        if parameter.startswith(ID_TOKEN_PARAMETER):
            _, _, id_token = parameter.partition("=")
            break

    if not id_token:
        raise MalformedTokenError(f"URL fragment carries an empty `{ID_TOKEN_PARAMETER}`.")
    logger.debug("Found %s of length %d", ID_TOKEN_PARAMETER, len(id_token))
    return id_token


def get_id_token_claims(page: Any) -> Any:
    return decode_jwt(get_id_token(page))


def load_env_parameters(env_file: str = DEFAULT_ENV_FILE) -> AuthorizationURLParameters:
    path = Path(env_file)
    if not path.exists():
        raise MissingParametersError(f"Environment file {env_file} does not exist.")
    values = dotenv_values(path)
    missing = [key for key in ("base_url", "client_id") if not values.get(key)]
    if missing:
        raise MissingParametersError(
            f"Environment file {env_file} is missing required keys: {', '.join(missing)}"
        )
    extra_params = [
        (key[len(EXTRA_PARAM_PREFIX):], value or "")
        for key, value in values.items()
        if key.startswith(EXTRA_PARAM_PREFIX)
    ]
    return AuthorizationURLParameters(
        base_url=values["base_url"],
        client_id=values["client_id"],
        response_type=values.get("response_type"),
        redirect_uri=values.get("redirect_uri"),
        scope=values.get("scope"),
        state=values.get("state"),
        prompt=values.get("prompt"),
        extra_params=extra_params or None,
    )


def get_command_name(prefix: str | None, name: str) -> str:
    if prefix:
        return prefix + name[:1].upper() + name[1:]
    return name


def _snake_case(name: str) -> str:
    name = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1_\2", name)
    name = re.sub(r"([a-z\d])([A-Z])", r"\1_\2", name)
    return name.lower()


def _build_authorization_url_command(chain: Chain, parameters: Any = None) -> AuthorizationURL:
    if parameters is None:
        raise MissingParametersError("buildAuthorizationURL requires authorization parameters.")
    return build_authorization_url(parameters)


def _create_start_authorization_command(prefix: str | None) -> Callable[..., Any]:
    build_name = get_command_name(prefix, "buildAuthorizationURL")
    start_name = get_command_name(prefix, "startAuthorization")

    def start_authorization_command(chain: Chain, subject: Any, parameters: Any = None) -> Any:
        if isinstance(subject, AuthorizationURL):
            return chain.visit(subject).subject
        if parameters is None:
            raise MissingParametersError(
                f"{start_name} needs either a chained AuthorizationURL or authorization parameters."
            )
        built = getattr(chain, build_name)(parameters)
        return getattr(built, start_name)().subject

    return start_authorization_command


def _decode_jwt_command(chain: Chain, subject: Any, jwt: str | None = None) -> Any:
    return decode_jwt(subject, jwt)


def _get_id_token_command(chain: Chain) -> str:
    return get_id_token(chain.page)


def _create_get_id_token_claims_command(prefix: str | None) -> Callable[..., Any]:
    get_id_token_name = get_command_name(prefix, "getIDToken")
    decode_jwt_name = get_command_name(prefix, "decodeJWT")

    def get_id_token_claims_command(chain: Chain) -> Any:
        return getattr(getattr(chain, get_id_token_name)(), decode_jwt_name)().subject

    return get_id_token_claims_command


def register_commands(prefix: str | None = None, commands: CommandTable | None = None) -> None:
    """Register the authorization commands, optionally namespaced by ``prefix``.

    Every command is reachable under its camelCase name (``getIDTokenClaims``,
    ``customGetIDTokenClaims``) and a snake_case alias
    (``get_id_token_claims``, ``custom_get_id_token_claims``).
    """
    table = COMMANDS if commands is None else commands
    definitions: Dict[str, Tuple[Callable[..., Any], str | None]] = {
        "buildAuthorizationURL": (_build_authorization_url_command, None),
        "startAuthorization": (_create_start_authorization_command(prefix), PREV_SUBJECT_OPTIONAL),
        "decodeJWT": (_decode_jwt_command, PREV_SUBJECT_OPTIONAL),
        "getIDToken": (_get_id_token_command, None),
        "getIDTokenClaims": (_create_get_id_token_claims_command(prefix), None),
    }
    for base_name, (func, prev_subject) in definitions.items():
        name = get_command_name(prefix, base_name)
        table.add(name, func, prev_subject)
        alias = _snake_case(name)
        if alias != name:
            table.add(alias, func, prev_subject)
    logger.info("Registered %d commands with prefix %r", len(definitions), prefix)


def create_callback_app(title: str = CALLBACK_PAGE_TITLE) -> Flask:
    """Flask app serving a blank landing page for authorization redirects."""
    app = Flask(__name__)
    page = CALLBACK_PAGE_HTML.format(title=title)

    @app.get("/")
    def index() -> str:
        return page

    @app.get("/index.html")
    def index_html() -> str:
        return page

    return app


def serve_callback_page(host: str = "127.0.0.1", port: int = 8790, title: str = CALLBACK_PAGE_TITLE) -> None:
    app = create_callback_app(title)
    logger.info("Callback page running at http://%s:%d/index.html", host, port)
    app.run(host=host, port=port, use_reloader=False)
