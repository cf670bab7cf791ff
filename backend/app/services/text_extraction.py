"""
Free-Text Extraction

Pure pattern-matching helpers over proposal prose: commit hashes, code-host
links, pull-request references and the job naming convention.

No I/O happens here. Everything is heuristic by nature, so each function is
covered by a table-driven test suite.
"""
import re
from typing import List, Optional

from bs4 import BeautifulSoup

from ..models.feed import GitHubRef, PullRequestRef


# =============================================================================
# PATTERNS
# =============================================================================

COMMIT_HASH_RE = re.compile(r"\b([a-f0-9]{40})\b", re.IGNORECASE)

_REPO = r"https?://(?:www\.)?github\.com/([A-Za-z0-9_.-]+)/([A-Za-z0-9_.-]+)"

COMMIT_URL_RE = re.compile(_REPO + r"/commit/([0-9a-fA-F]{7,40})\b")
TREE_URL_RE = re.compile(_REPO + r"/tree/([^/\s?#)\]>\"']+)((?:/[^\s?#)\]>\"']+)*)")
COMPARE_URL_RE = re.compile(_REPO + r"/compare/([A-Za-z0-9_./-]+?)\.{2,3}([A-Za-z0-9_./-]+?)(?=[\s?#)\]>\"']|$)")
PULL_URL_RE = re.compile(_REPO + r"/pull/(\d+)")


# =============================================================================
# PROPOSAL TEXT
# =============================================================================

def proposal_text(title: Optional[str], summary: Optional[str], url: Optional[str]) -> str:
    """The title/summary/url join that every extraction runs over."""
    return f"{title or ''}\n{summary or ''}\n{url or ''}"


def extract_commit_hash(text: Optional[str]) -> Optional[str]:
    """First standalone 40-hex token in the text, lower-cased."""
    if not text:
        return None
    match = COMMIT_HASH_RE.search(text)
    return match.group(1).lower() if match else None


def points_at_code_host(url: Optional[str]) -> bool:
    return bool(url) and "github.com" in url


# =============================================================================
# CODE HOST LINKS
# =============================================================================

def _strip_repo(repo: str) -> str:
    return repo[:-4] if repo.endswith(".git") else repo


def parse_github_url(url: Optional[str]) -> Optional[GitHubRef]:
    """
    Parse a commit, tree or compare link.

    Examples:
        https://github.com/dfinity/ic/commit/<sha>
        https://github.com/dfinity/ic/tree/<sha>/rs/nns/governance
        https://github.com/dfinity/ic/compare/<a>...<b>
    """
    if not url:
        return None

    match = COMMIT_URL_RE.search(url)
    if match:
        owner, repo, sha = match.groups()
        return GitHubRef(owner=owner, repo=_strip_repo(repo), kind="commit", ref=sha)

    match = COMPARE_URL_RE.search(url)
    if match:
        owner, repo, base, head = match.groups()
        return GitHubRef(
            owner=owner, repo=_strip_repo(repo), kind="compare",
            ref=f"{base}...{head}", base=base, head=head,
        )

    match = TREE_URL_RE.search(url)
    if match:
        owner, repo, ref, sub_path = match.groups()
        # Trailing sentence punctuation is not part of the link
        ref = ref.rstrip(".,;:")
        path = sub_path.rstrip(".,;:").strip("/") or None
        return GitHubRef(owner=owner, repo=_strip_repo(repo), kind="tree", ref=ref, path=path)

    return None


def extract_pr_references(text: Optional[str]) -> List[PullRequestRef]:
    """Unique pull-request links in order of appearance."""
    if not text:
        return []
    refs: List[PullRequestRef] = []
    for owner, repo, number in PULL_URL_RE.findall(text):
        ref = PullRequestRef(owner=owner, repo=_strip_repo(repo), number=int(number))
        if ref not in refs:
            refs.append(ref)
    return refs


def extract_commit_references(text: Optional[str]) -> List[GitHubRef]:
    """Unique commit and compare links in order of appearance."""
    if not text:
        return []

    found = []
    for match in COMMIT_URL_RE.finditer(text):
        owner, repo, sha = match.groups()
        found.append((match.start(), GitHubRef(owner=owner, repo=_strip_repo(repo), kind="commit", ref=sha)))
    for match in COMPARE_URL_RE.finditer(text):
        owner, repo, base, head = match.groups()
        found.append((
            match.start(),
            GitHubRef(owner=owner, repo=_strip_repo(repo), kind="compare",
                      ref=f"{base}...{head}", base=base, head=head),
        ))

    refs: List[GitHubRef] = []
    for _, ref in sorted(found, key=lambda item: item[0]):
        if ref not in refs:
            refs.append(ref)
    return refs


# =============================================================================
# JOB NAMING CONVENTION
# =============================================================================

def job_display_name(tag: str, proposal_id: int) -> str:
    """Display name the job runner gives a run: '<tag> #<proposal id>'."""
    return f"{tag} #{proposal_id}"


def match_job_proposal_id(tag: str, display_title: Optional[str]) -> Optional[int]:
    """Proposal id named in a run's display title, or None if it isn't one of ours."""
    if not display_title:
        return None
    match = re.search(re.escape(tag) + r" #(\d+)(?!\d)", display_title)
    return int(match.group(1)) if match else None


# =============================================================================
# FORUM POSTS
# =============================================================================

def html_to_text(html: Optional[str], limit: Optional[int] = None) -> str:
    """Flatten rendered post HTML to single-spaced text."""
    if not html:
        return ""
    text = BeautifulSoup(html, "html.parser").get_text(" ")
    text = re.sub(r"\s+", " ", text).strip()
    return text[:limit] if limit else text
