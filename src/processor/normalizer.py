"""Normalization of GitHub API payloads into typed entities.

A missing natural id makes the payload invalid (ValueError); optional
fields fall back to None or 0.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from src.models.data_models import (
    Commit,
    Contributor,
    MergeRequest,
    RawDataRecord,
    Repository,
)


def _require(payload: Dict, key: str) -> Any:
    value = payload.get(key)
    if value is None or value == "":
        raise ValueError(f"payload missing required field '{key}'")
    return value


def _int_or_zero(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _int_or_none(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _login(user: Optional[Dict]) -> Optional[str]:
    if isinstance(user, dict):
        return user.get("login")
    return None


def normalize_repository(payload: Dict) -> Repository:
    """
    Build a Repository from a /repos/{owner}/{repo} payload.

    Raises:
        ValueError: id or full_name missing
    """
    full_name = _require(payload, "full_name")
    return Repository(
        github_id=int(_require(payload, "id")),
        full_name=full_name,
        name=payload.get("name") or full_name.split("/")[-1],
        owner_login=_login(payload.get("owner")) or full_name.split("/")[0],
        description=payload.get("description"),
        url=payload.get("html_url"),
        stars=_int_or_zero(payload.get("stargazers_count")),
        forks=_int_or_zero(payload.get("forks_count")),
        language=payload.get("language"),
    )


def normalize_user(payload: Dict) -> Contributor:
    return Contributor(
        github_id=int(_require(payload, "id")),
        login=_require(payload, "login"),
        avatar_url=payload.get("avatar_url"),
        html_url=payload.get("html_url"),
    )


def normalize_pull_request(payload: Dict, repository_full_name: str) -> MergeRequest:
    user = payload.get("user") or {}
    return MergeRequest(
        github_id=int(_require(payload, "id")),
        repository_full_name=repository_full_name,
        number=int(_require(payload, "number")),
        title=(payload.get("title") or "").strip(),
        state=payload.get("state") or "unknown",
        author_login=_login(user),
        author_id=_int_or_none(user.get("id")),
        created_at=payload.get("created_at"),
        closed_at=payload.get("closed_at"),
        merged_at=payload.get("merged_at"),
    )


def normalize_commit(payload: Dict, repository_full_name: str) -> Commit:
    commit = payload.get("commit") or {}
    author = commit.get("author") or {}
    return Commit(
        sha=_require(payload, "sha"),
        repository_full_name=repository_full_name,
        message=(commit.get("message") or "").strip(),
        author_login=_login(payload.get("author")),
        committed_at=author.get("date"),
    )


@dataclass
class ExtractedEntities:
    """Entities produced from one batch of raw payloads, deduplicated by natural key."""
    repositories: List[Repository] = field(default_factory=list)
    contributors: List[Contributor] = field(default_factory=list)
    merge_requests: List[MergeRequest] = field(default_factory=list)
    raw_records: List[RawDataRecord] = field(default_factory=list)
    invalid: int = 0

    def counts(self) -> Dict[str, int]:
        return {
            "repository": len(self.repositories),
            "contributor": len(self.contributors),
            "merge_request": len(self.merge_requests),
        }


def extract_entities(
    repositories: Iterable[Dict],
    pull_requests: Iterable[Tuple[str, Dict]],
) -> ExtractedEntities:
    """
    Normalize raw repository and pull request payloads.

    Contributors are taken from repository owners and pull request authors.
    Invalid payloads are counted and skipped.

    Args:
        repositories: Repository payloads
        pull_requests: (repository_full_name, pull request payload) pairs

    Returns:
        ExtractedEntities with one entry per natural key
    """
    result = ExtractedEntities()
    repos: Dict[int, Repository] = {}
    users: Dict[int, Contributor] = {}
    prs: Dict[int, MergeRequest] = {}

    def add_user(payload: Optional[Dict]) -> None:
        if not isinstance(payload, dict) or payload.get("id") is None:
            return
        try:
            user = normalize_user(payload)
        except ValueError:
            return
        users[user.github_id] = user

    for payload in repositories:
        try:
            repo = normalize_repository(payload)
        except (ValueError, TypeError):
            result.invalid += 1
            continue
        repos[repo.github_id] = repo
        add_user(payload.get("owner"))
        result.raw_records.append(RawDataRecord(
            entity_type="repository",
            github_id=str(repo.github_id),
            data=payload,
            api_endpoint=f"/repos/{repo.full_name}",
        ))

    for full_name, payload in pull_requests:
        try:
            pr = normalize_pull_request(payload, full_name)
        except (ValueError, TypeError):
            result.invalid += 1
            continue
        prs[pr.github_id] = pr
        add_user(payload.get("user"))
        result.raw_records.append(RawDataRecord(
            entity_type="merge_request",
            github_id=str(pr.github_id),
            data=payload,
            api_endpoint=f"/repos/{full_name}/pulls/{pr.number}",
        ))

    result.repositories = list(repos.values())
    result.contributors = list(users.values())
    result.merge_requests = list(prs.values())
    return result


# Enrichment detail extraction


def repository_details(payload: Dict) -> Dict[str, Any]:
    return {
        "open_issues": _int_or_none(payload.get("open_issues_count")),
        "watchers": _int_or_none(payload.get("subscribers_count", payload.get("watchers_count"))),
        "topics": payload.get("topics") or [],
    }


def user_details(payload: Dict) -> Dict[str, Any]:
    return {
        "name": payload.get("name"),
        "company": payload.get("company"),
        "location": payload.get("location"),
        "bio": payload.get("bio"),
        "followers": _int_or_none(payload.get("followers")),
        "public_repos": _int_or_none(payload.get("public_repos")),
    }


def pull_request_details(payload: Dict) -> Dict[str, Any]:
    return {
        "additions": _int_or_none(payload.get("additions")),
        "deletions": _int_or_none(payload.get("deletions")),
        "changed_files": _int_or_none(payload.get("changed_files")),
        "commits_count": _int_or_none(payload.get("commits")),
        "merged_at": payload.get("merged_at"),
    }


def commit_details(payload: Dict) -> Dict[str, Any]:
    stats = payload.get("stats") or {}
    return {
        "additions": _int_or_none(stats.get("additions")),
        "deletions": _int_or_none(stats.get("deletions")),
    }
