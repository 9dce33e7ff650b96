"""Which file versions a request can see."""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from ..indexer.models import CommitFileVersion, FileVersion
from ..store.base import IndexStore, QueryFilter

logger = logging.getLogger(__name__)


@dataclass
class VersionView:
    """The file versions visible to one request, at most one per (repo, path).

    Taken once at request start; every read in the request goes through it so
    definitions from different versions of one path are never mixed.
    """

    repo_ids: List[str]
    visible: Dict[Tuple[str, str], FileVersion] = field(default_factory=dict)
    pinned_commits: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self._by_id = {fv.id: fv for fv in self.visible.values()}

    def version_of(self, repo_id: str, file_path: str) -> Optional[FileVersion]:
        return self.visible.get((repo_id, file_path))

    def by_id(self, file_version_id: str) -> Optional[FileVersion]:
        return self._by_id.get(file_version_id)

    def is_visible(self, file_version_id: str) -> bool:
        return file_version_id in self._by_id

    def file_version_ids(self) -> List[str]:
        return sorted(self._by_id)

    def to_filter(self) -> QueryFilter:
        return QueryFilter(repo_ids=list(self.repo_ids), file_version_ids=self.file_version_ids())


def current_versions(versions: Sequence[FileVersion]) -> Dict[str, FileVersion]:
    """Highest generation per path, tombstones included."""
    latest: Dict[str, FileVersion] = {}
    for version in versions:
        known = latest.get(version.file_path)
        if known is None or version.generation > known.generation:
            latest[version.file_path] = version
    return latest


def pinned_versions(
    versions: Sequence[FileVersion], rows: Sequence[CommitFileVersion], commit_hash: str
) -> Optional[Dict[str, FileVersion]]:
    """Version of each path as of a commit, or None when the commit is unknown.

    A path maps to the version whose commit association has the latest
    timestamp at or before the commit's own timestamp.
    """
    commit_rows = [row for row in rows if row.commit_hash == commit_hash]
    if not commit_rows:
        return None
    cutoff = max(row.timestamp for row in commit_rows)

    by_id = {version.id: version for version in versions}
    chosen: Dict[str, CommitFileVersion] = {}
    for row in rows:
        if row.timestamp > cutoff or row.file_version_id not in by_id:
            continue
        known = chosen.get(row.file_path)
        # Rows of the pinned commit win ties with other commits at the same instant
        if (
            known is None
            or row.timestamp > known.timestamp
            or (row.timestamp == known.timestamp and row.commit_hash == commit_hash)
        ):
            chosen[row.file_path] = row

    return {path: by_id[row.file_version_id] for path, row in chosen.items()}


async def build_version_view(
    store: IndexStore, repos: Sequence[Tuple[str, Optional[str]]]
) -> VersionView:
    """Build the view for a list of (repo_id, commit_hash or None).

    Args:
        store: Index store
        repos: Repositories in scope with an optional pinned commit

    Returns:
        Version view
    """
    visible: Dict[Tuple[str, str], FileVersion] = {}
    pinned: Dict[str, str] = {}

    for repo_id, commit_hash in repos:
        versions = await store.list_file_versions(repo_id)
        selected = None
        if commit_hash:
            rows = await store.list_commit_file_versions(repo_id)
            selected = pinned_versions(versions, rows, commit_hash)
            if selected is None:
                logger.warning(f"Commit {commit_hash} is not recorded for {repo_id}, using current versions")
            else:
                pinned[repo_id] = commit_hash
        if selected is None:
            selected = current_versions(versions)

        for path, version in selected.items():
            if not version.deleted:
                visible[(repo_id, path)] = version

    logger.debug(f"Version view over {len(repos)} repositories sees {len(visible)} files")
    return VersionView(repo_ids=[repo_id for repo_id, _ in repos], visible=visible, pinned_commits=pinned)
