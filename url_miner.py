#!/usr/bin/env python3
"""
Comment URL Miner

This tool mines the commit history of a repository for URLs embedded in
source-code comments. For every listed commit it diffs the commit against
its first parent and reports, per file of the selected language, which
comment URLs were added, deleted or replaced.

- Local repositories are read with GitPython, GitHub-hosted ones with PyGithub
- Only files of one language (file type) are analyzed per run
- Output is JSONL: one object per (commit, file) with numbered change records
"""

import argparse
import json
import logging
import os
import sys
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, IO, Iterable, List, Optional

from dotenv import load_dotenv
from git import Repo
from git.exc import BadName, BadObject, GitCommandError, InvalidGitRepositoryError, NoSuchPathError
from github import Auth, Github, GithubException

from comment_reader import (
    FileType,
    MinerError,
    TokenizerError,
    decode_source,
    file_type_from_tag,
    get_file_type,
    is_supported,
    read_comments,
)
from url_changes import (
    ChangeRecord,
    EditOp,
    UrlOccurrence,
    classify_changes,
    edit_script_from_patch,
    edit_script_from_text,
    extract_urls,
    patch_mentions_url,
)


logger = logging.getLogger(__name__)


class RepositoryOpenError(MinerError):
    """The repository itself cannot be opened. Fatal for the whole run."""


class UnknownRevisionError(MinerError):
    """A commit identifier does not resolve to a commit."""


def epoch_to_iso(epoch: int) -> str:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


# ============================================================================
# VERSION CONTROL COLLABORATORS
# ============================================================================

class ChangeKind(Enum):
    ADD = "ADD"
    DELETE = "DELETE"
    MODIFY = "MODIFY"
    COPY = "COPY"
    RENAME = "RENAME"


def _absent() -> Optional[bytes]:
    return None


@dataclass
class ChangedFile:
    """One changed path of a commit. Blob content is loaded on demand."""
    change_kind: ChangeKind
    old_path: Optional[str]
    new_path: Optional[str]
    read_old: Callable[[], Optional[bytes]] = _absent
    read_new: Callable[[], Optional[bytes]] = _absent
    patch: Optional[str] = None

    def mentions_url(self) -> bool:
        # Without a patch there is nothing to pre-filter on
        if self.patch is None:
            return True
        return patch_mentions_url(self.patch)

    def edit_script(self, old_data: Optional[bytes], new_data: Optional[bytes]) -> List[EditOp]:
        if self.patch is not None:
            return edit_script_from_patch(self.patch)
        return edit_script_from_text(decode_source(old_data or b''), decode_source(new_data or b''))


@dataclass
class CommitChanges:
    sha: str
    short_message: str
    commit_time: str
    files: List[ChangedFile]


def find_git_dir(path: str) -> Optional[Path]:
    """
    Locate the git directory for a path: the path itself if it is a
    (bare) *.git directory, its .git subdirectory, or a *.git directory
    inside it. Returns None if the path is not a directory.
    """
    directory = Path(path).resolve()
    if not directory.is_dir():
        return None
    if directory.name.endswith('.git'):
        return directory
    if (directory / '.git').is_dir():
        return directory / '.git'
    candidates = sorted(p for p in directory.glob('*.git') if p.is_dir())
    if candidates:
        return candidates[0]
    return directory


def make_repo_name(git_dir: Path) -> str:
    """Short repository name such as "myApp/.git" or "myApp.git"."""
    if git_dir.name == '.git':
        return f"{git_dir.parent.name}/.git"
    return git_dir.name


def read_blob(blob) -> Optional[bytes]:
    try:
        return blob.data_stream.read()
    except (BadObject, ValueError) as e:
        logger.debug(f"Missing blob {blob.hexsha}: {e}")
        return None


class LocalRepository:
    """Commits and blobs of a repository on the local file system."""

    def __init__(self, path: str):
        git_dir = find_git_dir(path)
        if git_dir is None:
            raise RepositoryOpenError(f"{path} is not a directory")
        try:
            self.repo = Repo(str(git_dir))
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise RepositoryOpenError(f"{path} is not a git repository") from e
        self.name = make_repo_name(git_dir)

    def resolve(self, rev: str):
        try:
            return self.repo.commit(rev)
        except (BadName, BadObject, ValueError) as e:
            raise UnknownRevisionError(f"{rev} is not a commit ID.") from e

    def get_commit(self, rev: str) -> CommitChanges:
        commit = self.resolve(rev)
        try:
            files = list(self._changed_files(commit))
        except GitCommandError as e:
            raise MinerError(f"git diff failed for {commit.hexsha}: {e}") from e
        return CommitChanges(
            sha=commit.hexsha,
            short_message=commit.summary,
            commit_time=epoch_to_iso(commit.committed_date),
            files=files,
        )

    def _changed_files(self, commit) -> Iterable[ChangedFile]:
        if not commit.parents:
            for item in commit.tree.traverse():
                if item.type == 'blob':
                    yield ChangedFile(ChangeKind.ADD, None, item.path, read_new=partial(read_blob, item))
            return

        parent = commit.parents[0]
        for diff in parent.diff(commit, create_patch=True, histogram=True, find_copies=True):
            if diff.new_file:
                kind = ChangeKind.ADD
            elif diff.deleted_file:
                kind = ChangeKind.DELETE
            elif diff.copied_file:
                kind = ChangeKind.COPY
            elif diff.renamed_file:
                kind = ChangeKind.RENAME
            else:
                kind = ChangeKind.MODIFY

            raw = diff.diff
            patch = raw.decode('utf-8', errors='replace') if isinstance(raw, bytes) else (raw or '')
            yield ChangedFile(
                change_kind=kind,
                old_path=diff.a_path,
                new_path=diff.b_path,
                read_old=partial(read_blob, diff.a_blob) if diff.a_blob is not None else _absent,
                read_new=partial(read_blob, diff.b_blob) if diff.b_blob is not None else _absent,
                patch=patch,
            )


GITHUB_STATUS_KINDS = {
    'added': ChangeKind.ADD,
    'removed': ChangeKind.DELETE,
    'modified': ChangeKind.MODIFY,
    'changed': ChangeKind.MODIFY,
    'renamed': ChangeKind.RENAME,
    'copied': ChangeKind.COPY,
}


class GitHubRepository:
    """Commits and file contents of a GitHub-hosted repository (owner/repo)."""

    def __init__(self, full_name: str, token: Optional[str] = None):
        load_dotenv()
        token = token or os.getenv('GITHUB_TOKEN')
        if not token:
            logger.warning("No GitHub token provided. API rate limits will be restrictive.")
            self.github = Github()
        else:
            self.github = Github(auth=Auth.Token(token))

        try:
            self.repo = self.github.get_repo(full_name)
        except GithubException as e:
            if e.status == 403:
                logger.warning("Note: Likely API rate limiting. Provide a GitHub token via GITHUB_TOKEN or --token.")
            raise RepositoryOpenError(f"Error accessing repository {full_name}: {e}") from e
        self.name = full_name

    def _read(self, path: str, ref: str) -> Optional[bytes]:
        try:
            return self.repo.get_contents(path, ref=ref).decoded_content
        except (GithubException, AttributeError) as e:
            logger.debug(f"Cannot read {path}@{ref[:7]}: {e}")
            return None

    def get_commit(self, rev: str) -> CommitChanges:
        try:
            commit = self.repo.get_commit(rev)
            files = list(commit.files)
        except GithubException as e:
            raise UnknownRevisionError(f"{rev} is not a commit ID.") from e

        parent_sha = commit.parents[0].sha if commit.parents else None
        changed: List[ChangedFile] = []
        for f in files:
            kind = GITHUB_STATUS_KINDS.get(f.status)
            if kind is None:
                continue
            if parent_sha is None:
                kind = ChangeKind.ADD
            old_path = None if kind is ChangeKind.ADD else (f.previous_filename or f.filename)
            new_path = None if kind is ChangeKind.DELETE else f.filename
            changed.append(ChangedFile(
                change_kind=kind,
                old_path=old_path,
                new_path=new_path,
                read_old=partial(self._read, old_path, parent_sha) if old_path else _absent,
                read_new=partial(self._read, new_path, commit.sha) if new_path else _absent,
                patch=f.patch,
            ))

        author = commit.commit.committer or commit.commit.author
        commit_time = ""
        if author and author.date:
            commit_time = author.date.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')
        return CommitChanges(
            sha=commit.sha,
            short_message=(commit.commit.message or "").split('\n', 1)[0],
            commit_time=commit_time,
            files=changed,
        )


# ============================================================================
# FILE ANALYSIS
# ============================================================================

@dataclass
class FileAnalysis:
    """Outcome of analyzing one file of one commit."""
    path: str
    edit_type: str
    records: List[ChangeRecord]
    errors: List[str] = field(default_factory=list)

    def to_json(self, commit: CommitChanges) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "Commit": commit.sha,
            "ShortMessage": commit.short_message,
            "CommitTime": commit.commit_time,
            "File": self.path,
            "FileEditType": self.edit_type,
            "Changes": {str(i): r.to_json() for i, r in enumerate(self.records)},
        }
        if self.errors:
            out["Errors"] = list(self.errors)
        return out


def find_url_occurrences(file_type: FileType, data: Optional[bytes]) -> List[UrlOccurrence]:
    """URL occurrences in the comments of one blob. Raises TokenizerError."""
    if not data:
        return []
    # UTF-16 content never contains the ASCII bytes of "http"
    if data[:2] in (b'\xfe\xff', b'\xff\xfe'):
        if 'http' not in decode_source(data):
            return []
    elif b'http' not in data:
        return []
    return extract_urls(read_comments(file_type, data))


class UrlChangeMiner:
    """Mines URL changes in comments of one file type across commits."""

    def __init__(self, repository, target: FileType):
        self.repository = repository
        self.target = target
        self.stats: Counter = Counter()

    def is_target(self, path: Optional[str]) -> bool:
        return path is not None and is_supported(self.target) and get_file_type(path) is self.target

    # -----------------------------
    # Per-file analysis
    # -----------------------------

    def _occurrences(self, path: str, data: Optional[bytes], errors: List[str]) -> List[UrlOccurrence]:
        try:
            return find_url_occurrences(self.target, data)
        except TokenizerError as e:
            logger.warning(f"  Cannot read comments of {path}: {e}")
            errors.append(str(e))
            return []

    def _analyze_single(self, path: str, read: Callable[[], Optional[bytes]], edit_type: str) -> Optional[FileAnalysis]:
        errors: List[str] = []
        occurrences = self._occurrences(path, read(), errors)
        if not occurrences and not errors:
            return None
        if edit_type == "DELETED":
            records = classify_changes(occurrences, [], [])
        else:
            records = classify_changes([], occurrences, [])
        return FileAnalysis(path, edit_type, records, errors)

    def _analyze_modify(self, changed: ChangedFile) -> Optional[FileAnalysis]:
        if not changed.mentions_url():
            return None
        path = changed.new_path
        errors: List[str] = []
        old_data = changed.read_old()
        new_data = changed.read_new()
        old = self._occurrences(changed.old_path or path, old_data, errors)
        new = self._occurrences(path, new_data, errors)
        if not old and not new and not errors:
            return None
        script = changed.edit_script(old_data, new_data) if old and new else []
        return FileAnalysis(path, "MODIFIED", classify_changes(old, new, script), errors)

    def analyze_file(self, changed: ChangedFile) -> List[FileAnalysis]:
        """Analyze one changed path. Files of other types produce nothing."""
        results: List[Optional[FileAnalysis]] = []
        kind = changed.change_kind

        if kind is ChangeKind.ADD or kind is ChangeKind.COPY:
            if self.is_target(changed.new_path):
                results.append(self._analyze_single(changed.new_path, changed.read_new, "ADDED"))
        elif kind is ChangeKind.DELETE:
            if self.is_target(changed.old_path):
                results.append(self._analyze_single(changed.old_path, changed.read_old, "DELETED"))
        elif kind is ChangeKind.MODIFY:
            if self.is_target(changed.new_path):
                results.append(self._analyze_modify(changed))
        elif kind is ChangeKind.RENAME:
            new_is_target = self.is_target(changed.new_path)
            old_is_target = self.is_target(changed.old_path)
            if new_is_target and old_is_target:
                results.append(self._analyze_modify(changed))
            elif new_is_target:
                results.append(self._analyze_single(changed.new_path, changed.read_new, "ADDED"))
            elif old_is_target:
                results.append(self._analyze_single(changed.old_path, changed.read_old, "DELETED"))

        return [r for r in results if r is not None]

    # -----------------------------
    # Mining logic
    # -----------------------------

    def analyze_commit(self, rev: str) -> Optional[Dict[str, Any]]:
        """Analyze one commit; returns None when the identifier cannot be used."""
        try:
            commit = self.repository.get_commit(rev)
        except MinerError as e:
            logger.error(f"Error: {e}")
            self.stats['commits_skipped'] += 1
            return None

        analyses: List[FileAnalysis] = []
        for changed in commit.files:
            analyses.extend(self.analyze_file(changed))
        self.stats['commits_analyzed'] += 1
        return {"commit": commit, "files": analyses}

    def mine(self, targets: Iterable[str], out: IO[str]):
        """Analyze each commit in turn and write one JSON line per reported file."""
        commits_checked = 0
        for rev in targets:
            commits_checked += 1
            if commits_checked % 10 == 0:
                logger.info(f"Checked {commits_checked} commits...")

            result = self.analyze_commit(rev)
            if result is None:
                continue
            for analysis in result["files"]:
                self.stats['files_reported'] += 1
                if analysis.errors:
                    self.stats['files_with_errors'] += 1
                for record in analysis.records:
                    self.stats[record.change_type.value] += 1
                out.write(json.dumps(analysis.to_json(result["commit"]), ensure_ascii=False) + "\n")

    # -----------------------------
    # Summary
    # -----------------------------

    def generate_summary(self) -> Dict[str, Any]:
        return {
            'repository': self.repository.name,
            'language': self.target.name,
            'commits_analyzed': self.stats['commits_analyzed'],
            'commits_skipped': self.stats['commits_skipped'],
            'files_reported': self.stats['files_reported'],
            'files_with_errors': self.stats['files_with_errors'],
            'records': {
                t: self.stats[t]
                for t in ("ADDED", "DELETED", "REPLACED", "REPLACED_AND_ADDED")
            },
        }


def read_target_list(source: str) -> List[str]:
    """Read commit identifiers, one per line. '-' reads standard input."""
    try:
        if source == '-':
            lines = sys.stdin.read().splitlines()
        else:
            with open(source, 'r', encoding='utf-8') as f:
                lines = f.read().splitlines()
    except OSError as e:
        logger.error(f"Cannot read commit list {source}: {e}")
        return []
    return [line.strip() for line in lines if line.strip()]


LANGUAGE_TAGS = [t.name.lower() for t in FileType if is_supported(t)]


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the comment URL miner."""
    parser = argparse.ArgumentParser(description='Extract modified URLs in source-code comments from a Git history')
    parser.add_argument('repo', help='Path to a Git repository (or owner/repo with --github)')
    parser.add_argument('language', type=str.lower, choices=LANGUAGE_TAGS, help='File type whose changes are reported')
    parser.add_argument('commits', help='File listing one commit ID per line ("-" reads standard input)')
    parser.add_argument(
        '--github',
        action='store_true',
        help='Treat REPO as a GitHub repository name (owner/repo) instead of a local path'
    )
    parser.add_argument(
        '--token',
        help='GitHub API token (or set GITHUB_TOKEN environment variable)'
    )
    parser.add_argument(
        '--output',
        help='Write JSONL records to this file instead of standard output'
    )
    parser.add_argument('--verbose', action='store_true', help='Log debug messages')

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(levelname)s %(name)s: %(message)s',
        stream=sys.stderr,
    )

    start = time.monotonic()
    target = file_type_from_tag(args.language)
    targets = read_target_list(args.commits)

    try:
        if args.github:
            repository = GitHubRepository(args.repo, token=args.token)
        else:
            repository = LocalRepository(args.repo)
    except RepositoryOpenError as e:
        logger.error(str(e))
        return 1

    miner = UrlChangeMiner(repository, target)
    if args.output:
        with open(args.output, 'w', encoding='utf-8') as out:
            miner.mine(targets, out)
        logger.info(f"Results saved to {args.output} (JSONL)")
    else:
        miner.mine(targets, sys.stdout)

    summary = miner.generate_summary()
    logger.info(
        f"{summary['repository']}: {summary['commits_analyzed']} commits analyzed, "
        f"{summary['commits_skipped']} skipped, {summary['files_reported']} files reported"
    )
    for change_type, count in summary['records'].items():
        logger.info(f"  {change_type}: {count}")
    logger.info(f"{args.repo},{int((time.monotonic() - start) * 1000)}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
