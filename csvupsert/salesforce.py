from dataclasses import dataclass
import logging
from typing import Any
from urllib.parse import urlparse
from xml.etree import ElementTree
from xml.sax.saxutils import escape

import requests

from csvupsert.config import MAX_BATCH_SIZE, SalesforceCredentials
from csvupsert.schemas import Record, UpsertOutcome


logger = logging.getLogger(__name__)

PARTNER_NS = "urn:partner.soap.sforce.com"
SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"

_LOGIN_ENVELOPE = """<?xml version="1.0" encoding="utf-8" ?>
<env:Envelope xmlns:xsd="http://www.w3.org/2001/XMLSchema"
    xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance"
    xmlns:env="http://schemas.xmlsoap.org/soap/envelope/">
  <env:Body>
    <n1:login xmlns:n1="urn:partner.soap.sforce.com">
      <n1:username>{username}</n1:username>
      <n1:password>{password}</n1:password>
    </n1:login>
  </env:Body>
</env:Envelope>"""


class AuthenticationError(RuntimeError):
    """Login to Salesforce failed or no session is available."""


class UpsertTransportError(RuntimeError):
    """A whole upsert call failed before per-record outcomes were returned."""


@dataclass(frozen=True)
class SalesforceSession:
    session_id: str
    instance_url: str
    user_id: str | None
    organization_id: str | None


def _find_text(root: ElementTree.Element, tag: str) -> str | None:
    node = root.find(f".//{{{PARTNER_NS}}}{tag}")
    if node is None or node.text is None:
        return None
    return node.text.strip()


def parse_login_response(body: str) -> SalesforceSession:
    """
    Extract the session from a SOAP login response.

    Faults (INVALID_LOGIN, LOGIN_MUST_USE_SECURITY_TOKEN, ...) raise
    AuthenticationError with the faultstring.
    """
    try:
        root = ElementTree.fromstring(body)
    except ElementTree.ParseError as exc:
        raise AuthenticationError(f"unreadable login response: {exc}") from exc

    fault = root.find(f".//{{{SOAP_ENV_NS}}}Fault")
    if fault is not None:
        fault_string = fault.findtext("faultstring") or fault.findtext("faultcode") or "login fault"
        raise AuthenticationError(fault_string.strip())

    session_id = _find_text(root, "sessionId")
    server_url = _find_text(root, "serverUrl")
    if not session_id or not server_url:
        raise AuthenticationError("login response did not contain a session")

    parsed = urlparse(server_url)
    return SalesforceSession(
        session_id=session_id,
        instance_url=f"{parsed.scheme}://{parsed.netloc}",
        user_id=_find_text(root, "userId"),
        organization_id=_find_text(root, "organizationId"),
    )


def normalize_upsert_response(payload: Any) -> list[UpsertOutcome]:
    # A single-record call may come back as one object instead of a list.
    items = payload if isinstance(payload, list) else [payload]
    outcomes: list[UpsertOutcome] = []
    for item in items:
        if not isinstance(item, dict):
            raise UpsertTransportError(f"unexpected upsert result: {item!r}")
        outcomes.append(UpsertOutcome.from_response(item))
    return outcomes


def _error_text(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text
    if isinstance(body, list) and body and isinstance(body[0], dict):
        return "; ".join(str(item.get("message") or item.get("errorCode") or item) for item in body)
    return str(body)


class SalesforceConnection:
    """
    HTTP connection to one Salesforce org.

    The session returned by login() is kept on the instance and reused by
    every upsert call.
    """

    def __init__(
        self,
        credentials: SalesforceCredentials,
        *,
        login_url: str = "https://login.salesforce.com",
        api_version: str = "59.0",
        session: requests.Session | None = None,
        timeout_s: int = 30,
    ) -> None:
        self._creds = credentials
        self._login_url = login_url.rstrip("/")
        self._api_version = api_version
        self._timeout_s = timeout_s
        self._http = session or requests.Session()
        self.session: SalesforceSession | None = None

    def login(self) -> SalesforceSession:
        body = _LOGIN_ENVELOPE.format(
            username=escape(self._creds.username),
            password=escape(self._creds.password + self._creds.security_token),
        )
        try:
            resp = self._http.post(
                f"{self._login_url}/services/Soap/u/{self._api_version}",
                data=body.encode("utf-8"),
                headers={"Content-Type": "text/xml; charset=UTF-8", "SOAPAction": "login"},
                timeout=self._timeout_s,
            )
        except requests.RequestException as exc:
            raise AuthenticationError(f"could not reach {self._login_url}: {exc}") from exc

        if not 200 <= resp.status_code < 300:
            # SOAP faults arrive with a 500 status and carry the useful message.
            try:
                parse_login_response(resp.text)
            except AuthenticationError as exc:
                raise AuthenticationError(f"login failed with status {resp.status_code}: {exc}") from exc
            raise AuthenticationError(f"login failed with status {resp.status_code}")

        session = parse_login_response(resp.text)
        self.session = session
        logger.info(
            "authenticated with salesforce user_id=%s org_id=%s",
            session.user_id,
            session.organization_id,
        )
        return session

    def upsert(
        self,
        object_type: str,
        records: list[Record],
        external_id_field: str | None,
    ) -> list[UpsertOutcome]:
        if self.session is None:
            raise AuthenticationError("login() must succeed before upserting")
        if len(records) > MAX_BATCH_SIZE:
            raise UpsertTransportError(
                f"sobject collections accept at most {MAX_BATCH_SIZE} records per call, got {len(records)}"
            )

        id_field = external_id_field or "Id"
        url = (
            f"{self.session.instance_url}/services/data/v{self._api_version}"
            f"/composite/sobjects/{object_type}/{id_field}"
        )
        payload = {
            "allOrNone": False,
            "records": [{"attributes": {"type": object_type}, **record} for record in records],
        }

        try:
            resp = self._http.patch(
                url,
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.session.session_id}",
                    "Content-Type": "application/json",
                },
                timeout=self._timeout_s,
            )
        except requests.RequestException as exc:
            raise UpsertTransportError(f"upsert request failed: {exc}") from exc

        if not 200 <= resp.status_code < 300:
            raise UpsertTransportError(f"upsert failed with status {resp.status_code}: {_error_text(resp)}")

        try:
            body = resp.json()
        except ValueError as exc:
            raise UpsertTransportError(f"upsert response was not JSON: {exc}") from exc
        return normalize_upsert_response(body)
