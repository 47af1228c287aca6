"""
GitHub REST client for issue ingestion.

Lists issues page by page (the issues endpoint also returns pull requests,
which are dropped here), either drained into a list or pulled one page at a
time through an IssueStream cursor. Every request goes through the retry
engine with the GitHub profile; only rate limits, 5xx and network failures
are retried.
"""
import logging
import re
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Literal, Optional

import httpx
from pydantic import TypeAdapter, ValidationError

from src.core.config import Settings
from src.core.errors import MissingConfigurationError, RateLimitError
from src.core.retry import GITHUB_RETRY_CONFIG, RetryConfig, with_retry
from src.ingestion.schemas import GitHubIssue, GitHubRelease


logger = logging.getLogger(__name__)

DEFAULT_PER_PAGE = 100
GITHUB_API_VERSION = "2022-11-28"

IssueState = Literal["open", "closed", "all"]
SortField = Literal["created", "updated"]
Direction = Literal["asc", "desc"]

_LAST_PAGE_RE = re.compile(r"[?&]page=(\d+)[^>]*>;\s*rel=\"last\"")
_issue_list_adapter = TypeAdapter(list[GitHubIssue])


class GitHubAPIError(Exception):
    """Non-2xx response from GitHub that is not a rate limit."""

    def __init__(self, status_code: int | None, message: str):
        self.status_code = status_code
        super().__init__(message)


class GitHubAuthError(GitHubAPIError):
    """Token missing, expired or revoked (401)."""
    pass


class GitHubNotFoundError(GitHubAPIError):
    """Resource does not exist or is not visible to the token (404)."""
    pass


class GitHubResponseError(GitHubAPIError):
    """Response body did not have the expected shape; fatal."""

    def __init__(self, message: str):
        super().__init__(None, message)


class GitHubRateLimitError(GitHubAPIError, RateLimitError):
    """Primary or secondary rate limit; carries headers for the retry delay."""

    def __init__(self, status_code: int, message: str, headers: dict[str, str] | None = None):
        self.status_code = status_code
        self.headers = dict(headers or {})
        Exception.__init__(self, message)


@dataclass
class GitHubResponse:
    data: Any
    link_header: str | None


@dataclass
class IssuePage:
    issues: list[GitHubIssue]
    page: int
    estimated_total_pages: int | None
    estimated_total_issues: int | None


@dataclass
class ReleaseLookup:
    """
    Outcome of a best-effort latest-release lookup.
    status is "found", "absent" (repository has no release) or "failed".
    """
    status: Literal["found", "absent", "failed"]
    release: Optional[GitHubRelease] = None
    error: str | None = None

    @property
    def found(self) -> bool:
        return self.status == "found"


def parse_repo_full_name(repo_full_name: str) -> tuple[str, str]:
    """Splits "owner/name"; raises ValueError for anything else."""
    parts = repo_full_name.split("/")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ValueError(f"Invalid repo_full_name: {repo_full_name}")
    return parts[0], parts[1]


def parse_last_page_from_link(link_header: str | None) -> int | None:
    """Reads the rel="last" page number out of a Link header."""
    if not link_header:
        return None
    for part in link_header.split(","):
        match = _LAST_PAGE_RE.search(part)
        if match:
            return int(match.group(1))
    return None


class IssueStream:
    """
    Pull-based cursor over an issue listing.

    Iterating yields one IssuePage per fetched page that still has issues
    after filtering. The estimated total comes from the first page's Link
    header only and is advisory.
    """

    def __init__(
        self,
        client: "GitHubIssuesClient",
        repo_full_name: str,
        params: dict[str, str],
        per_page: int,
        max_pages: int | None,
        since_issue_number: int | None = None,
    ):
        self._client = client
        self.repo_full_name = repo_full_name
        self._params = params
        self.per_page = per_page
        self.max_pages = max_pages
        self.since_issue_number = since_issue_number

        self.page = 0
        self.estimated_total_pages: int | None = None
        self.fetched = 0
        self.skipped_for_resume = 0
        self.exhausted = False

    @property
    def estimated_total_issues(self) -> int | None:
        if self.estimated_total_pages is None:
            return None
        return self.estimated_total_pages * self.per_page

    def __aiter__(self) -> AsyncIterator[IssuePage]:
        return self._pages()

    async def _pages(self) -> AsyncIterator[IssuePage]:
        owner, repo = parse_repo_full_name(self.repo_full_name)
        path = f"/repos/{owner}/{repo}/issues"

        while not self.exhausted:
            if self.max_pages is not None and self.page >= self.max_pages:
                self.exhausted = True
                break

            self.page += 1
            params = {**self._params, "per_page": str(self.per_page), "page": str(self.page)}

            logger.info(
                "Fetching issues page",
                extra={
                    "repo": self.repo_full_name,
                    "page": self.page,
                    "estimated_total_pages": self.estimated_total_pages,
                    "issues_so_far": self.fetched,
                    "skipped_for_resume": self.skipped_for_resume,
                },
            )
            response = await self._client.request(path, params=params)

            if self.page == 1:
                self.estimated_total_pages = parse_last_page_from_link(response.link_header)
                if self.estimated_total_pages:
                    logger.info(
                        "Estimated total from Link header",
                        extra={
                            "repo": self.repo_full_name,
                            "estimated_total_pages": self.estimated_total_pages,
                            "estimated_total_issues": self.estimated_total_issues,
                        },
                    )

            raw = response.data or []
            issues = [i for i in _validate_issues(raw) if not i.is_pull_request]

            if self.since_issue_number is not None and self._params.get("direction") == "asc":
                before = len(issues)
                issues = [i for i in issues if i.number > self.since_issue_number]
                self.skipped_for_resume += before - len(issues)

            self.fetched += len(issues)
            if len(raw) < self.per_page:
                self.exhausted = True

            logger.info(
                "Fetched issues page",
                extra={
                    "repo": self.repo_full_name,
                    "page": self.page,
                    "batch_size": len(issues),
                    "total_fetched": self.fetched,
                    "skipped_for_resume": self.skipped_for_resume,
                },
            )

            if issues:
                yield IssuePage(
                    issues=issues,
                    page=self.page,
                    estimated_total_pages=self.estimated_total_pages,
                    estimated_total_issues=self.estimated_total_issues,
                )

    async def drain(self, until: Callable[[GitHubIssue], bool] | None = None) -> list[GitHubIssue]:
        """
        Collects issues until the listing ends, or until `until` returns True
        for an issue (that issue and everything after it are left out).
        """
        collected: list[GitHubIssue] = []
        async for page in self:
            for issue in page.issues:
                if until is not None and until(issue):
                    self.exhausted = True
                    return collected
                collected.append(issue)
        return collected


def _validate_issues(raw: Any) -> list[GitHubIssue]:
    if not isinstance(raw, list):
        raise GitHubResponseError(f"Expected a list of issues, got {type(raw).__name__}")
    try:
        return _issue_list_adapter.validate_python(raw)
    except ValidationError as e:
        raise GitHubResponseError(f"Unexpected issue payload: {e.error_count()} validation error(s)") from e


class GitHubIssuesClient:
    """
    Authenticated client over the issue-listing and release endpoints.
    The httpx.AsyncClient is owned by the caller.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        token: str,
        base_url: str = "https://api.github.com",
        per_page: int = DEFAULT_PER_PAGE,
        max_pages: int | None = None,
        retry_config: RetryConfig = GITHUB_RETRY_CONFIG,
    ):
        if not token:
            raise MissingConfigurationError("github_token")

        self._client = client
        self._token = token
        self.base_url = base_url.rstrip("/")
        self.per_page = per_page
        self.max_pages = max_pages
        self.retry_config = retry_config

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient, settings: Settings) -> "GitHubIssuesClient":
        return cls(
            client,
            token=settings.github_token,
            base_url=settings.github_api_base_url,
            per_page=settings.issue_sync_page_size,
            max_pages=settings.max_pages,
        )

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {self._token}",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }

    async def request(self, path: str, params: dict[str, str] | None = None) -> GitHubResponse:
        """GET with retry; returns decoded JSON plus the Link header."""

        async def call() -> GitHubResponse:
            response = await self._client.get(
                f"{self.base_url}{path}",
                params=params,
                headers=self._headers,
            )
            if response.is_success:
                try:
                    data = response.json()
                except ValueError as e:
                    raise GitHubResponseError(f"Invalid JSON from GitHub for {path}") from e
                return GitHubResponse(data=data, link_header=response.headers.get("link"))
            raise _error_for(response)

        return await with_retry(call, config=self.retry_config, operation=f"github GET {path}")

    def stream_issues(
        self,
        repo_full_name: str,
        state: IssueState,
        sort: SortField,
        direction: Direction,
        since: str | None = None,
        since_issue_number: int | None = None,
    ) -> IssueStream:
        parse_repo_full_name(repo_full_name)
        params = {"state": state, "sort": sort, "direction": direction}
        if since:
            params["since"] = since
        return IssueStream(
            self,
            repo_full_name,
            params,
            per_page=self.per_page,
            max_pages=self.max_pages,
            since_issue_number=since_issue_number,
        )

    def stream_issues_by_created(
        self,
        repo_full_name: str,
        state: IssueState = "all",
        direction: Direction = "asc",
        since_issue_number: int | None = None,
    ) -> IssueStream:
        """Full-sync listing; since_issue_number skips already-processed issues when ascending."""
        return self.stream_issues(
            repo_full_name,
            state=state,
            sort="created",
            direction=direction,
            since_issue_number=since_issue_number,
        )

    async def list_issues(
        self,
        repo_full_name: str,
        state: IssueState,
        sort: SortField,
        direction: Direction,
        since: str | None = None,
    ) -> list[GitHubIssue]:
        stream = self.stream_issues(repo_full_name, state=state, sort=sort, direction=direction, since=since)
        return await stream.drain()

    async def list_issues_updated_since(
        self,
        repo_full_name: str,
        since: str | None,
        state: IssueState = "all",
    ) -> list[GitHubIssue]:
        return await self.list_issues(repo_full_name, state=state, sort="updated", direction="asc", since=since)

    async def list_issues_by_created(
        self,
        repo_full_name: str,
        state: IssueState = "all",
        direction: Direction = "asc",
    ) -> list[GitHubIssue]:
        return await self.list_issues(repo_full_name, state=state, sort="created", direction=direction)

    async def list_issues_newer_than_number(
        self,
        repo_full_name: str,
        last_issue_number: int,
        state: IssueState = "all",
    ) -> list[GitHubIssue]:
        """Newest-first listing that stops at the first issue at or below the watermark."""
        stream = self.stream_issues(repo_full_name, state=state, sort="created", direction="desc")
        return await stream.drain(until=lambda issue: issue.number <= last_issue_number)

    async def get_issue(self, repo_full_name: str, issue_number: int) -> GitHubIssue:
        owner, repo = parse_repo_full_name(repo_full_name)
        response = await self.request(f"/repos/{owner}/{repo}/issues/{issue_number}")
        try:
            return GitHubIssue.model_validate(response.data)
        except ValidationError as e:
            raise GitHubResponseError(f"Unexpected issue payload for #{issue_number}") from e

    async def get_latest_release(self, repo_full_name: str) -> ReleaseLookup:
        """404 means the repository has no published release; other errors propagate."""
        owner, repo = parse_repo_full_name(repo_full_name)
        try:
            response = await self.request(f"/repos/{owner}/{repo}/releases/latest")
        except GitHubNotFoundError:
            logger.warning("Latest release not found for repository", extra={"repo": repo_full_name})
            return ReleaseLookup(status="absent")

        try:
            release = GitHubRelease.model_validate(response.data)
        except ValidationError as e:
            raise GitHubResponseError(f"Unexpected release payload for {repo_full_name}") from e
        return ReleaseLookup(status="found", release=release)


def _error_for(response: httpx.Response) -> GitHubAPIError:
    text = response.text
    status = response.status_code
    message = f"GitHub API error {status} {response.reason_phrase}: {text[:500]}"

    if status == 429 or (status == 403 and "rate limit" in text.lower()):
        return GitHubRateLimitError(status, message, dict(response.headers))
    if status == 401:
        return GitHubAuthError(status, message)
    if status == 404:
        return GitHubNotFoundError(status, message)
    return GitHubAPIError(status, message)
