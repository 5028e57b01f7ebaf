#!/usr/bin/env python3
"""
Comment Lister

Companion tools for inspecting the comments the miner sees:

  git    list every comment of the selected file types in one revision
  files  list the comments of source files on disk
  count  count files of a revision whose names match shell patterns
"""

import argparse
import fnmatch
import json
import logging
import os
import sys
import time
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional, Set

from comment_reader import (
    FileType,
    MinerError,
    TokenizerError,
    get_file_type,
    is_supported,
    parse_file_types,
    read_comments,
)
from url_miner import LocalRepository, epoch_to_iso, read_blob


logger = logging.getLogger(__name__)


def describe_comments(file_type: FileType, data: bytes) -> Dict[str, Any]:
    """Numbered comment entries plus CommentCount for one file. Raises TokenizerError."""
    entry: Dict[str, Any] = {}
    blocks = read_comments(file_type, data)
    for i, block in enumerate(blocks):
        entry[str(i)] = {
            "Text": block.text,
            "Line": block.start_line,
            "CharPositionInLine": block.column,
        }
    entry["CommentCount"] = len(blocks)
    return entry


def _last_modified(repository: LocalRepository, commit, path: str) -> int:
    """Commit time of the latest commit touching path, 0 if unavailable."""
    for c in repository.repo.iter_commits(commit, paths=path, max_count=1):
        return c.committed_date
    return 0


def list_revision_comments(repository: LocalRepository, target: str = "HEAD",
                           types: Optional[Set[FileType]] = None) -> Dict[str, Any]:
    """List the comments of every file of the given types in one revision."""
    start = time.monotonic()
    if types is None:
        types = {t for t in FileType if is_supported(t)}

    commit = repository.resolve(target)
    counters: Counter = Counter()
    files: Dict[str, Any] = {}

    for item in commit.tree.traverse():
        if item.type != 'blob':
            continue
        file_type = get_file_type(item.path)
        if file_type not in types:
            continue

        entry: Dict[str, Any] = {
            "ObjectId": item.hexsha,
            "LastModified": epoch_to_iso(_last_modified(repository, commit, item.path)),
            "FileType": file_type.name,
        }
        data = read_blob(item)
        if data is None:
            entry["Error"] = "MissingObjectException"
            entry["CommentCount"] = 0
        else:
            try:
                entry.update(describe_comments(file_type, data))
                counters[file_type] += 1
            except TokenizerError as e:
                entry["Error"] = "CommentReadFail"
                entry["Errorlog"] = str(e)
                entry["CommentCount"] = 0
        files[item.path] = entry

    return {
        "Repository": repository.name,
        "Revision": target,
        "ObjectId": commit.hexsha,
        "CommitTime": epoch_to_iso(commit.committed_date),
        "Files": files,
        "FileTypes": {t.name: counters[t] for t in FileType if t in counters},
        "ElapsedTime": int((time.monotonic() - start) * 1000),
    }


def _walk(paths: Iterable[str]) -> Iterable[str]:
    for path in paths:
        if os.path.isdir(path):
            for root, _dirs, names in os.walk(path):
                for name in sorted(names):
                    yield os.path.join(root, name)
        else:
            yield path


def list_file_comments(paths: Iterable[str]) -> Dict[str, Any]:
    """List the comments of supported files (directories are walked)."""
    files: Dict[str, Any] = {}
    for filename in _walk(paths):
        file_type = get_file_type(filename.replace(os.sep, '/'))
        if not is_supported(file_type):
            continue
        try:
            with open(filename, 'rb') as f:
                data = f.read()
        except OSError:
            logger.error(f"{filename} is not readable")
            continue
        try:
            entry = describe_comments(file_type, data)
        except TokenizerError as e:
            logger.warning(f"Skipping {filename}: {e}")
            continue
        files[filename] = {"FileType": file_type.name, **entry}
    return {"Files": files}


def count_files(repository: LocalRepository, patterns: List[str], target: str = "HEAD") -> Dict[str, Any]:
    """Count the files of a revision whose base names match each pattern."""
    commit = repository.resolve(target)
    counts = Counter()
    for item in commit.tree.traverse():
        if item.type != 'blob':
            continue
        for pattern in patterns:
            if fnmatch.fnmatchcase(item.name, pattern):
                counts[pattern] += 1
    return {
        "Repository": repository.name,
        "Revision": target,
        "ObjectId": commit.hexsha,
        "CommitTime": epoch_to_iso(commit.committed_date),
        "FileCount": [{"Pattern": p, "Count": counts[p]} for p in patterns],
    }


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the comment lister."""
    parser = argparse.ArgumentParser(description='List source-code comments of a revision or of files on disk')
    sub = parser.add_subparsers(dest='command', required=True)

    git_cmd = sub.add_parser('git', help='List comments of all files in one revision')
    git_cmd.add_argument('repo', help='Path to a Git repository')
    git_cmd.add_argument('--target', default='HEAD', help='Revision to analyze (tag or commit ID)')
    git_cmd.add_argument(
        '--type',
        help='Comma-separated file types, file names or extensions to analyze (default: all)'
    )

    files_cmd = sub.add_parser('files', help='List comments of files on disk')
    files_cmd.add_argument('paths', nargs='+', help='Files or directories')

    count_cmd = sub.add_parser('count', help='Count files matching shell patterns in one revision')
    count_cmd.add_argument('repo', help='Path to a Git repository')
    count_cmd.add_argument('-f', dest='patterns', action='append', default=[], help='Pattern such as "*.java" (repeatable)')
    count_cmd.add_argument('--target', default='HEAD', help='Revision to analyze (tag or commit ID)')

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format='%(levelname)s %(name)s: %(message)s', stream=sys.stderr)

    try:
        if args.command == 'files':
            result = list_file_comments(args.paths)
        else:
            repository = LocalRepository(args.repo)
            if args.command == 'git':
                types = parse_file_types(args.type.split(',')) if args.type else None
                result = list_revision_comments(repository, args.target, types)
            else:
                result = count_files(repository, args.patterns, args.target)
    except MinerError as e:
        logger.error(f"Error: {e}")
        return 1

    json.dump(result, sys.stdout, indent=2, ensure_ascii=False)
    sys.stdout.write("\n")
    return 0


if __name__ == '__main__':
    sys.exit(main())
