"""
Code Host + Job Runner Clients

Both sit on the GitHub REST API:
- CodeHostClient resolves commit / compare / pull request references to
  line-level diff stats.
- JobRunnerClient lists workflow runs and dispatches workflow templates that
  verify a build or write commentary for one proposal.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

import httpx
from dateutil.parser import isoparse

from ..config import WatcherConfig
from ..exceptions import UpstreamUnavailableError
from ..models.feed import DiffStats, GitHubRef, JobRun, PullRequestRef


logger = logging.getLogger(__name__)


def _headers(token: Optional[str]) -> Dict[str, str]:
    headers = {"Accept": "application/vnd.github.v3+json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def _sum_files(files: Iterable[Dict[str, Any]], path: Optional[str] = None) -> DiffStats:
    """Sum per-file counts, restricted to files under path when given."""
    prefix = path.strip("/") + "/" if path else None
    stats = DiffStats()
    for entry in files:
        filename = entry.get("filename", "")
        if prefix and not (filename.startswith(prefix) or filename == prefix.rstrip("/")):
            continue
        stats = stats + DiffStats(int(entry.get("additions", 0)), int(entry.get("deletions", 0)))
    return stats


class CodeHostClient:
    """
    Diff-stat lookups against the code host.

    Every lookup returns None when the reference does not resolve (unknown
    repo, unknown commit, or no files under the path filter). Transport
    failures raise UpstreamUnavailableError.
    """

    SERVICE = "code host"

    def __init__(
        self,
        config: WatcherConfig,
        token: Optional[str] = None,
        http: Optional[httpx.Client] = None,
    ):
        self.config = config
        self.token = token
        self.http = http or httpx.Client(timeout=config.http_timeout_seconds)

    def _get_json(self, path: str) -> Optional[Dict[str, Any]]:
        url = f"{self.config.github_api_url}{path}"
        try:
            response = self.http.get(url, headers=_headers(self.token))
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError(self.SERVICE, str(e), original_error=e)

        if response.status_code in (404, 422):
            return None
        if response.status_code in (403, 429):
            raise UpstreamUnavailableError(
                self.SERVICE, f"rate limited on {path}", response.status_code
            )
        if response.status_code >= 400:
            raise UpstreamUnavailableError(
                self.SERVICE, f"HTTP {response.status_code} on {path}", response.status_code
            )
        return response.json()

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    def commit_stats(self, owner: str, repo: str, sha: str, path: Optional[str] = None) -> Optional[DiffStats]:
        data = self._get_json(f"/repos/{owner}/{repo}/commits/{sha}")
        if data is None:
            return None
        if path:
            stats = _sum_files(data.get("files") or [], path)
            return stats if (stats.additions or stats.deletions) else None
        totals = data.get("stats") or {}
        return DiffStats(int(totals.get("additions", 0)), int(totals.get("deletions", 0)))

    def compare_stats(self, owner: str, repo: str, base: str, head: str, path: Optional[str] = None) -> Optional[DiffStats]:
        data = self._get_json(f"/repos/{owner}/{repo}/compare/{base}...{head}")
        if data is None:
            return None
        stats = _sum_files(data.get("files") or [], path)
        if path and not (stats.additions or stats.deletions):
            return None
        return stats

    def pull_request_stats(self, ref: PullRequestRef) -> Optional[DiffStats]:
        data = self._get_json(f"/repos/{ref.owner}/{ref.repo}/pulls/{ref.number}")
        if data is None:
            return None
        return DiffStats(int(data.get("additions", 0)), int(data.get("deletions", 0)))

    def ref_stats(self, ref: GitHubRef) -> Optional[DiffStats]:
        """Stats for a parsed commit, tree or compare link."""
        if ref.kind == "compare":
            return self.compare_stats(ref.owner, ref.repo, ref.base, ref.head, ref.path)
        # A tree link pins a commit; its sub-path narrows the files counted
        return self.commit_stats(ref.owner, ref.repo, ref.ref, ref.path)

    def find_commit(self, sha: str, path: Optional[str] = None) -> Optional[DiffStats]:
        """Look the hash up in each known repository, first hit wins."""
        for full_name in self.config.known_repositories:
            owner, _, repo = full_name.partition("/")
            stats = self.commit_stats(owner, repo, sha, path)
            if stats is not None:
                logger.info(f"Found commit {sha[:12]} in {full_name}")
                return stats
        return None


class JobRunnerClient:
    """
    Workflow listing and dispatch for the verifier repository.

    Usage:
        jobs = JobRunnerClient(config, token=secrets.github_token)
        runs = jobs.list_runs()
        jobs.dispatch("verify.yml", 140102)
    """

    SERVICE = "job runner"

    def __init__(
        self,
        config: WatcherConfig,
        token: Optional[str] = None,
        http: Optional[httpx.Client] = None,
    ):
        self.config = config
        self.token = token
        self.http = http or httpx.Client(timeout=config.http_timeout_seconds)

    @property
    def _repo_path(self) -> str:
        return f"{self.config.github_api_url}/repos/{self.config.job_repo_owner}/{self.config.job_repo_name}"

    def list_runs(self, per_page: Optional[int] = None) -> List[JobRun]:
        """Most recent workflow runs across every template."""
        try:
            response = self.http.get(
                f"{self._repo_path}/actions/runs",
                params={"per_page": per_page or self.config.job_listing_page_size},
                headers=_headers(self.token),
            )
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError(self.SERVICE, str(e), original_error=e)

        if response.status_code >= 400:
            raise UpstreamUnavailableError(
                self.SERVICE, f"run listing failed with HTTP {response.status_code}", response.status_code
            )

        runs = []
        for raw in response.json().get("workflow_runs") or []:
            created = raw.get("created_at")
            runs.append(JobRun(
                id=raw.get("id"),
                display_title=raw.get("display_title") or "",
                status=raw.get("status") or "",
                conclusion=raw.get("conclusion"),
                html_url=raw.get("html_url") or "",
                created_at=isoparse(created) if created else None,
            ))
        return runs

    def dispatch(self, workflow: str, proposal_id: int) -> bool:
        """
        Ask the runner to start one workflow for a proposal.

        Returns:
            True if the runner accepted the dispatch
        """
        if not self.token:
            logger.error("GITHUB_TOKEN not configured, cannot dispatch workflows")
            return False

        try:
            response = self.http.post(
                f"{self._repo_path}/actions/workflows/{workflow}/dispatches",
                json={"ref": self.config.job_ref, "inputs": {"proposal_id": str(proposal_id)}},
                headers=_headers(self.token),
            )
        except httpx.HTTPError as e:
            logger.error(f"Error triggering {workflow} for proposal {proposal_id}: {e}")
            return False

        if response.status_code >= 400:
            logger.error(
                f"Failed to trigger {workflow} for proposal {proposal_id}: "
                f"{response.status_code} {response.text[:200]}"
            )
            return False

        logger.info(f"Triggered {workflow} for proposal {proposal_id}")
        return True

    def run_url(self, run_id: int) -> str:
        return f"https://github.com/{self.config.job_repo_owner}/{self.config.job_repo_name}/actions/runs/{run_id}"
