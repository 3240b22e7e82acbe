"""Gerrit REST implementation of ReviewBackend."""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import quote

import httpx

from batch_review.backend.base import BackendError, BackendResult, ReviewBackend
from batch_review.config import BackendSettings
from batch_review.models import (
    ChainEntry,
    ChangeDetail,
    ChangeStatus,
    FileInfo,
    LabelInfo,
    LabelValue,
    Owner,
    Person,
    ReviewItem,
    SubmitRequirements,
)

logger = logging.getLogger(__name__)

# Gerrit prefixes every JSON body with this to defeat XSSI.
XSSI_PREFIX = ")]}'"

_SKIPPED_FILES = {"/COMMIT_MSG", "/MERGE_LIST", "/PATCHSET_LEVEL"}


def strip_xssi(text: str) -> str:
    if text.startswith(XSSI_PREFIX):
        return text[len(XSSI_PREFIX):].lstrip("\r\n")
    return text


def _quote_id(change_id: str) -> str:
    # REST ids from change queries arrive already encoded ("project%2Fsub~branch~I...").
    return quote(change_id, safe="~%")


def _status(value: Any) -> ChangeStatus | None:
    try:
        return ChangeStatus(value) if value else None
    except ValueError:
        return None


def has_approving_vote(change: dict, label: str = "Code-Review") -> bool:
    """True when ``label`` is approved or anyone voted +2 on it."""
    info = (change.get("labels") or {}).get(label)
    if not info:
        return False
    if info.get("approved"):
        return True
    return any(vote.get("value") == 2 for vote in info.get("all") or [])


class GerritBackend(ReviewBackend):
    """Talks to a Gerrit server over its REST API.

    With credentials configured, requests go to the authenticated ``/a/``
    endpoints using HTTP basic auth.
    """

    def __init__(self, settings: BackendSettings, client: httpx.AsyncClient | None = None) -> None:
        if not settings.url:
            raise ValueError("backend.url is required for the Gerrit backend")
        self.settings = settings
        self.base_url = settings.url.rstrip("/")
        self._authenticated = bool(settings.username)
        self._auth = httpx.BasicAuth(settings.username, settings.password) if self._authenticated else None
        self._client = client or httpx.AsyncClient(timeout=settings.timeout_seconds)
        self._owns_client = client is None

    def _url(self, path: str) -> str:
        prefix = "/a" if self._authenticated else ""
        return f"{self.base_url}{prefix}/{path.lstrip('/')}"

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, self._url(path), auth=self._auth, **kwargs)
        except httpx.HTTPError as e:
            raise BackendError(f"{method} {path} failed: {e}") from e

    async def _get_json(self, path: str, params: Any = None) -> Any:
        response = await self._request("GET", path, params=params)
        if response.status_code >= 400:
            raise BackendError(f"GET {path} returned {response.status_code}: {response.text.strip()}")
        try:
            return json.loads(strip_xssi(response.text))
        except json.JSONDecodeError as e:
            raise BackendError(f"GET {path} returned invalid JSON") from e

    async def _post(self, path: str, body: dict | None = None) -> BackendResult:
        try:
            response = await self._request("POST", path, json=body or {})
        except BackendError as e:
            return BackendResult(success=False, error=str(e))
        if response.status_code >= 400:
            return BackendResult(success=False, error=response.text.strip() or f"HTTP {response.status_code}")
        return BackendResult(success=True)

    # --- Queries ---

    def _to_item(self, change: dict) -> ReviewItem:
        owner = change.get("owner") or {}
        account_id = owner.get("_account_id")
        number = change.get("_number", 0)
        project = change.get("project", "")
        return ReviewItem(
            rest_id=change["id"],
            vcs_id=change.get("change_id", ""),
            number=number,
            subject=change.get("subject", ""),
            project=project,
            branch=change.get("branch", ""),
            owner=Owner(name=owner.get("name") or f"Account {account_id}", account_id=account_id),
            updated_at=change.get("updated", ""),
            submittable=change.get("submittable", False),
            has_approving_vote=has_approving_vote(change),
            web_url=f"{self.base_url}/c/{project}/+/{number}" if number else None,
        )

    async def list_assigned_changes(self, query: str) -> list[ReviewItem]:
        params = [
            ("q", query),
            ("o", "DETAILED_ACCOUNTS"),
            ("o", "DETAILED_LABELS"),
            ("o", "SUBMITTABLE"),
            ("n", str(self.settings.max_changes)),
        ]
        data = await self._get_json("changes/", params=params)
        if not isinstance(data, list):
            raise BackendError("change query did not return a list")
        items = []
        for change in data:
            try:
                items.append(self._to_item(change))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed change %r: %s", change.get("id") if isinstance(change, dict) else change, e)
        return items

    async def related_chain(self, change_id: str) -> list[ChainEntry]:
        data = await self._get_json(f"changes/{_quote_id(change_id)}/revisions/current/related")
        entries = []
        for related in (data or {}).get("changes", []):
            if not related.get("change_id"):
                continue
            entries.append(ChainEntry(
                commit=(related.get("commit") or {}).get("commit", ""),
                vcs_id=related["change_id"],
                number=related.get("_change_number"),
                status=_status(related.get("status")),
            ))
        return entries

    async def change_detail(self, change_id: str) -> ChangeDetail:
        data = await self._get_json(f"changes/{_quote_id(change_id)}/detail")
        try:
            return ChangeDetail(
                vcs_id=data["change_id"],
                number=data.get("_number", 0),
                status=_status(data.get("status")) or ChangeStatus.NEW,
            )
        except (KeyError, TypeError) as e:
            raise BackendError(f"malformed change detail for {change_id}") from e

    async def current_revision(self, rest_id: str) -> str:
        data = await self._get_json(f"changes/{_quote_id(rest_id)}", params={"o": "CURRENT_REVISION"})
        return (data or {}).get("current_revision") or ""

    async def submit_requirements(self, rest_id: str) -> SubmitRequirements:
        params = [("o", "SUBMITTABLE"), ("o", "SUBMIT_REQUIREMENTS")]
        data = await self._get_json(f"changes/{_quote_id(rest_id)}", params=params)
        unmet = [
            req.get("name", "")
            for req in data.get("submit_requirements") or []
            if req.get("status") == "UNSATISFIED"
        ]
        return SubmitRequirements(submittable=bool(data.get("submittable")), unmet=unmet)

    async def file_list(self, rest_id: str) -> list[FileInfo]:
        data = await self._get_json(f"changes/{_quote_id(rest_id)}/revisions/current/files")
        return [
            FileInfo(
                path=path,
                status=info.get("status", "M"),
                lines_inserted=info.get("lines_inserted", 0),
                lines_deleted=info.get("lines_deleted", 0),
            )
            for path, info in (data or {}).items()
            if path not in _SKIPPED_FILES
        ]

    async def labels(self, rest_id: str) -> list[LabelInfo]:
        data = await self._get_json(f"changes/{_quote_id(rest_id)}/detail")
        permitted = (data or {}).get("permitted_labels") or {}
        labels = []
        for name, info in ((data or {}).get("labels") or {}).items():
            allowed = permitted.get(name)
            if not allowed:
                continue
            # Gerrit pads the neutral score as " 0".
            values = [
                LabelValue(score=score.strip(), description=description)
                for score, description in (info.get("values") or {}).items()
                if score in allowed
            ]
            labels.append(LabelInfo(name=name, values=values))
        return labels

    async def suggest_people(self, rest_id: str, query: str, *, cc: bool = False) -> list[Person]:
        params = [("q", query), ("n", "10")]
        if cc:
            params.append(("reviewer-state", "CC"))
        data = await self._get_json(f"changes/{_quote_id(rest_id)}/suggest_reviewers", params=params)
        people = []
        for suggestion in data or []:
            if account := suggestion.get("account"):
                if account.get("_account_id") is None:
                    continue
                name = account.get("name") or account.get("email") or f"Account {account['_account_id']}"
                people.append(Person(
                    id=str(account["_account_id"]),
                    name=name,
                    short_name=account.get("username") or name.split()[0],
                ))
            elif group := suggestion.get("group"):
                if not group.get("id"):
                    continue
                name = group.get("name") or group["id"]
                people.append(Person(id=group["id"], name=name, short_name=name, is_group=True))
        return people

    # --- Mutations ---

    async def post_vote(
        self, rest_id: str, revision_id: str, labels: dict[str, int],
        *, message: str | None = None, reviewers: list[str] | None = None,
        cc: list[str] | None = None, resolved: bool | None = None,
    ) -> BackendResult:
        body: dict[str, Any] = {"labels": labels, "drafts": "KEEP"}
        added = [{"reviewer": r} for r in reviewers or []]
        added += [{"reviewer": r, "state": "CC"} for r in cc or []]
        if added:
            body["reviewers"] = added
        if message:
            if resolved is None:
                body["message"] = message
            else:
                body["comments"] = {
                    "/PATCHSET_LEVEL": [{"message": message, "unresolved": not resolved}],
                }
        return await self._post(
            f"changes/{_quote_id(rest_id)}/revisions/{quote(revision_id, safe='')}/review", body,
        )

    async def submit(self, rest_id: str) -> BackendResult:
        return await self._post(f"changes/{_quote_id(rest_id)}/submit")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
