"""Artifact source: file contents and branch heads from GitHub.

Used to build secret specifications from documents kept in an application
repository, and to resolve the commit an image is built from.
"""

from __future__ import annotations

import logging
import re

import requests

logger = logging.getLogger(__name__)

GITHUB_RAW_BASE = "https://raw.githubusercontent.com"
GITHUB_API_BASE = "https://api.github.com"

REQUEST_TIMEOUT_SECONDS = 30

VALID_ORG_SLASH_REPO_PATTERN = r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$"
VALID_SHA_PATTERN = r"^[0-9a-f]{7,40}$"


class ArtifactFetchError(Exception):
    """Raised when content cannot be fetched from the artifact source."""

    pass


class ArtifactSource:
    """Read-only access to repositories on GitHub.

    The token, when given, is sent as an Authorization header and never
    logged.
    """

    def __init__(
        self,
        github_token: str | None = None,
        *,
        session: requests.Session | None = None,
        raw_base: str = GITHUB_RAW_BASE,
        api_base: str = GITHUB_API_BASE,
    ) -> None:
        self._token = github_token
        self._session = session or requests.Session()
        self._raw_base = raw_base.rstrip("/")
        self._api_base = api_base.rstrip("/")

    def _headers(self, accept: str | None = None) -> dict[str, str]:
        headers = {"User-Agent": "stackops"}
        if self._token:
            headers["Authorization"] = f"token {self._token}"
        if accept:
            headers["Accept"] = accept
        return headers

    @staticmethod
    def _check_repo(org_slash_repo: str) -> None:
        if not re.match(VALID_ORG_SLASH_REPO_PATTERN, org_slash_repo or ""):
            raise ArtifactFetchError(f"Invalid repository name: {org_slash_repo!r}")

    def file_content_at_sha(self, *, org_slash_repo: str, sha: str, path: str) -> str:
        """Content of a file at a commit (or any ref the host accepts)."""
        self._check_repo(org_slash_repo)
        if not sha:
            raise ArtifactFetchError("A revision is required to fetch a file")

        url = f"{self._raw_base}/{org_slash_repo}/{sha}/{path.lstrip('/')}"
        logger.debug(
            "Fetching file",
            extra={"repo": org_slash_repo, "sha": sha, "path": path},
        )
        try:
            response = self._session.get(
                url, headers=self._headers(), timeout=REQUEST_TIMEOUT_SECONDS
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise ArtifactFetchError(
                f"Could not fetch {path} from {org_slash_repo} at {sha}: {e}"
            ) from e
        return response.text

    def sha_for_branch(self, *, org_slash_repo: str, branch: str) -> str:
        """The commit SHA at the head of a branch."""
        self._check_repo(org_slash_repo)
        url = f"{self._api_base}/repos/{org_slash_repo}/commits/{branch}"
        try:
            response = self._session.get(
                url,
                headers=self._headers(accept="application/vnd.github.sha"),
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise ArtifactFetchError(
                f"Could not resolve branch {branch} of {org_slash_repo}: {e}"
            ) from e

        sha = response.text.strip()
        if not re.match(VALID_SHA_PATTERN, sha):
            raise ArtifactFetchError(f"Unexpected SHA for {org_slash_repo}@{branch}: {sha!r}")
        return sha
