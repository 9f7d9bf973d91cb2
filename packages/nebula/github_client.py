"""
GitHub REST client used to publish opportunity patches as pull requests and
to roll them back when the performance gate rejects a deployment.

Transient failures (429/5xx and transport errors) are retried with
exponential backoff; anything else surfaces as `GitHubError`.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx
import jwt


logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
TRANSIENT_STATUS = (429, 500, 502, 503, 504)


class GitHubError(Exception):
    """Raised when a GitHub API call fails or no credentials are available."""


@dataclass
class PatchFile:
    path: str
    content: str


@dataclass
class PatchRequest:
    owner: str
    repository: str
    branch: str
    commit_message: str
    pr_title: str
    pr_description: str = ""
    files: List[PatchFile] = field(default_factory=list)


@dataclass
class PullRequestRef:
    number: int
    url: str
    branch: Optional[str] = None


def _encode(content: str) -> str:
    return base64.b64encode(content.encode("utf-8")).decode("ascii")


class GitHubPublisher:
    def __init__(
        self,
        api_url: str = GITHUB_API,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_seconds: float = 2.0,
        log: Optional[logging.Logger] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self._client = client
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.log = log or logger

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        client = httpx.AsyncClient(timeout=self.timeout)
        try:
            yield client
        finally:
            await client.aclose()

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        token: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        allow_404: bool = False,
    ) -> Any:
        url = f"{self.api_url}{path}"
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        attempt = 0
        while True:
            attempt += 1
            try:
                resp = await client.request(method, url, json=json, params=params, headers=headers)
            except httpx.HTTPError as exc:
                self.log.warning("GitHub %s %s error (attempt %s): %s", method, path, attempt, exc)
                if attempt >= self.max_retries:
                    raise GitHubError(
                        f"HTTP error from GitHub on {method} {path} after {attempt} attempts"
                    ) from exc
            else:
                if resp.status_code == 404 and allow_404:
                    return None
                if resp.status_code < 300:
                    return resp.json() if resp.content else {}
                if resp.status_code not in TRANSIENT_STATUS:
                    raise GitHubError(
                        f"GitHub {method} {path} returned {resp.status_code}: {resp.text}"
                    )
                self.log.warning(
                    "GitHub transient error %s on %s %s (attempt %s)",
                    resp.status_code,
                    method,
                    path,
                    attempt,
                )
                if attempt >= self.max_retries:
                    raise GitHubError(
                        f"GitHub transient errors after {attempt} attempts, last code {resp.status_code}"
                    )
            await asyncio.sleep(self.backoff_seconds * (2 ** (attempt - 1)))

    async def _branch_from(
        self, client: httpx.AsyncClient, repo_path: str, token: str, base: str, branch: str
    ) -> str:
        ref = await self._request(client, "GET", f"{repo_path}/git/ref/heads/{quote(base)}", token)
        sha = ref["object"]["sha"]
        await self._request(
            client,
            "POST",
            f"{repo_path}/git/refs",
            token,
            json={"ref": f"refs/heads/{branch}", "sha": sha},
        )
        return sha

    async def _get_file(
        self, client: httpx.AsyncClient, repo_path: str, token: str, path: str, ref: str
    ) -> Optional[Dict[str, Any]]:
        found = await self._request(
            client,
            "GET",
            f"{repo_path}/contents/{quote(path)}",
            token,
            params={"ref": ref},
            allow_404=True,
        )
        # Directories come back as lists.
        return found if isinstance(found, dict) else None

    async def create_pull_request(self, patch: PatchRequest, token: str) -> PullRequestRef:
        if not patch.files:
            raise GitHubError("Patch has no files to commit")
        repo_path = f"/repos/{patch.owner}/{patch.repository}"

        async with self._session() as client:
            repo = await self._request(client, "GET", repo_path, token)
            base = repo.get("default_branch") or "main"
            await self._branch_from(client, repo_path, token, base, patch.branch)

            for item in patch.files:
                existing = await self._get_file(client, repo_path, token, item.path, patch.branch)
                body: Dict[str, Any] = {
                    "message": patch.commit_message,
                    "content": _encode(item.content),
                    "branch": patch.branch,
                }
                if existing and existing.get("sha"):
                    body["sha"] = existing["sha"]
                await self._request(
                    client, "PUT", f"{repo_path}/contents/{quote(item.path)}", token, json=body
                )

            pr = await self._request(
                client,
                "POST",
                f"{repo_path}/pulls",
                token,
                json={
                    "title": patch.pr_title,
                    "head": patch.branch,
                    "base": base,
                    "body": patch.pr_description,
                },
            )

        ref = PullRequestRef(number=pr["number"], url=pr["html_url"], branch=patch.branch)
        self.log.info(
            "Opened PR #%s on %s/%s from %s", ref.number, patch.owner, patch.repository, patch.branch
        )
        return ref

    async def rollback_pull_request(
        self, owner: str, repository: str, pr_number: int, token: str
    ) -> Optional[PullRequestRef]:
        """
        Undo a pull request.

        An open PR is closed and its branch deleted (returns None). A merged PR
        gets a revert PR restoring every touched file to the PR's base commit
        (returns the revert PR). A PR closed without merging needs nothing.
        """
        repo_path = f"/repos/{owner}/{repository}"
        async with self._session() as client:
            pr = await self._request(client, "GET", f"{repo_path}/pulls/{pr_number}", token)

            if pr.get("merged"):
                return await self._revert_merged(client, repo_path, token, pr)

            if pr.get("state") == "open":
                await self._request(
                    client,
                    "PATCH",
                    f"{repo_path}/pulls/{pr_number}",
                    token,
                    json={"state": "closed"},
                )
                head = (pr.get("head") or {}).get("ref")
                if head:
                    await self._request(
                        client,
                        "DELETE",
                        f"{repo_path}/git/refs/heads/{quote(head)}",
                        token,
                        allow_404=True,
                    )
                self.log.info("Closed PR #%s on %s/%s", pr_number, owner, repository)
                return None

        self.log.info("PR #%s on %s/%s already closed unmerged", pr_number, owner, repository)
        return None

    async def _changed_paths(
        self, client: httpx.AsyncClient, repo_path: str, token: str, pr_number: int
    ) -> List[str]:
        paths: List[str] = []
        page = 1
        while True:
            files = await self._request(
                client,
                "GET",
                f"{repo_path}/pulls/{pr_number}/files",
                token,
                params={"per_page": 100, "page": page},
            )
            for item in files:
                paths.append(item["filename"])
                if item.get("previous_filename"):
                    paths.append(item["previous_filename"])
            if len(files) < 100:
                return paths
            page += 1

    async def _revert_merged(
        self, client: httpx.AsyncClient, repo_path: str, token: str, pr: Dict[str, Any]
    ) -> PullRequestRef:
        number = pr["number"]
        base_ref = pr["base"]["ref"]
        base_sha = pr["base"]["sha"]
        branch = f"revert-pr-{number}-{int(time.time())}"
        message = f"Revert PR #{number}"

        await self._branch_from(client, repo_path, token, base_ref, branch)

        for path in await self._changed_paths(client, repo_path, token, number):
            original = await self._get_file(client, repo_path, token, path, base_sha)
            current = await self._get_file(client, repo_path, token, path, branch)
            if original is None:
                if current is not None:
                    await self._request(
                        client,
                        "DELETE",
                        f"{repo_path}/contents/{quote(path)}",
                        token,
                        json={"message": message, "sha": current["sha"], "branch": branch},
                    )
                continue
            body: Dict[str, Any] = {
                "message": message,
                "content": "".join((original.get("content") or "").split()),
                "branch": branch,
            }
            if current is not None:
                body["sha"] = current["sha"]
            await self._request(
                client, "PUT", f"{repo_path}/contents/{quote(path)}", token, json=body
            )

        revert = await self._request(
            client,
            "POST",
            f"{repo_path}/pulls",
            token,
            json={
                "title": f'Revert "{pr.get("title", f"PR #{number}")}"',
                "head": branch,
                "base": base_ref,
                "body": f"Reverts #{number}. The performance gate detected a regression after deploy.",
            },
        )
        self.log.info("Opened revert PR #%s for PR #%s", revert["number"], number)
        return PullRequestRef(number=revert["number"], url=revert["html_url"], branch=branch)


class GitHubAppAuth:
    """Mints installation access tokens for a GitHub App."""

    def __init__(
        self,
        app_id: str,
        private_key: str,
        *,
        api_url: str = GITHUB_API,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.app_id = app_id
        self.private_key = private_key
        self.api_url = api_url.rstrip("/")
        self._client = client
        self.timeout = timeout
        self._cache: Dict[str, Tuple[str, float]] = {}

    def app_jwt(self, now: Optional[float] = None) -> str:
        issued = int(now if now is not None else time.time())
        # Backdated to tolerate clock drift; GitHub caps lifetime at 10 minutes.
        payload = {"iat": issued - 60, "exp": issued + 540, "iss": str(self.app_id)}
        return jwt.encode(payload, self.private_key, algorithm="RS256")

    async def installation_token(self, installation_id: str) -> str:
        cached = self._cache.get(installation_id)
        if cached and cached[1] > time.time() + 60:
            return cached[0]

        url = f"{self.api_url}/app/installations/{installation_id}/access_tokens"
        headers = {
            "Authorization": f"Bearer {self.app_jwt()}",
            "Accept": "application/vnd.github+json",
        }
        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            resp = await client.post(url, headers=headers)
        except httpx.HTTPError as exc:
            raise GitHubError(f"Could not mint installation token: {exc}") from exc
        finally:
            if self._client is None:
                await client.aclose()

        if resp.status_code != 201:
            raise GitHubError(
                f"GitHub returned {resp.status_code} minting installation token: {resp.text}"
            )
        token = resp.json()["token"]
        # Installation tokens live for one hour.
        self._cache[installation_id] = (token, time.time() + 3600)
        return token


class GitHubTokenProvider:
    """Installation token when the app and installation are known, else the static token."""

    def __init__(self, app_auth: Optional[GitHubAppAuth] = None, fallback_token: Optional[str] = None):
        self.app_auth = app_auth
        self.fallback_token = fallback_token

    async def get_token(self, installation_id: Optional[str] = None) -> str:
        if self.app_auth is not None and installation_id:
            return await self.app_auth.installation_token(installation_id)
        if self.fallback_token:
            return self.fallback_token
        raise GitHubError("No GitHub credentials configured")
