#!/usr/bin/env python3
"""
Tests for the URL miner. Local mining runs against a throwaway git
repository built with GitPython; the GitHub backend is mocked.
"""

import io
import json
import os
import shutil
import tempfile
from contextlib import contextmanager
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from git import Actor, Repo
from github import GithubException

from comment_reader import FileType, TokenizerError, read_comments
from url_miner import (
    ChangeKind,
    ChangedFile,
    CommitChanges,
    GitHubRepository,
    LocalRepository,
    RepositoryOpenError,
    UnknownRevisionError,
    UrlChangeMiner,
    find_git_dir,
    find_url_occurrences,
    main,
    make_repo_name,
    read_target_list,
)


AUTHOR = Actor("Test User", "test@example.com")

FOO_V1 = "// see http://a.com\nclass Foo {\n}\n"
FOO_V2 = "// see http://b.com\nclass Foo {\n}\n// more http://c.com\n"


@contextmanager
def sample_repository():
    """
    Yield (path, [sha1, sha2, sha3]) for a repository where Foo.java is
    added, edited (one URL replaced, one added) and finally deleted.
    """
    path = tempfile.mkdtemp()
    try:
        repo = Repo.init(path)
        shas = []

        def commit(message):
            return repo.index.commit(message, author=AUTHOR, committer=AUTHOR).hexsha

        def write(name, content):
            with open(os.path.join(path, name), 'w', encoding='utf-8') as f:
                f.write(content)
            repo.index.add([name])

        write('Foo.java', FOO_V1)
        write('notes.txt', 'see http://ignored.com\n')
        shas.append(commit("Add Foo"))

        write('Foo.java', FOO_V2)
        shas.append(commit("Update links\n\nLonger description."))

        repo.index.remove(['Foo.java'], working_tree=True)
        shas.append(commit("Remove Foo"))

        repo.close()
        yield path, shas
    finally:
        shutil.rmtree(path, ignore_errors=True)


def mine_lines(repository, target, revs):
    miner = UrlChangeMiner(repository, target)
    out = io.StringIO()
    miner.mine(revs, out)
    return miner, [json.loads(line) for line in out.getvalue().splitlines()]


# -----------------------------
# Local repositories
# -----------------------------

def test_mine_local_history():
    """Add, modify and delete commits each produce one JSON line."""
    with sample_repository() as (path, shas):
        repository = LocalRepository(path)
        miner, lines = mine_lines(repository, FileType.JAVA, shas)

    assert [line["FileEditType"] for line in lines] == ["ADDED", "MODIFIED", "DELETED"]
    assert all(line["File"] == "Foo.java" for line in lines)
    assert [line["Commit"] for line in lines] == shas

    added = lines[0]["Changes"]
    assert added == {"0": {"Type": "ADDED", "NewURL": "http://a.com", "NewLine": 1, "NewCommentLine": 1}}

    modified = lines[1]
    assert modified["ShortMessage"] == "Update links"
    assert modified["CommitTime"].endswith("Z")
    assert modified["Changes"]["0"] == {
        "Type": "REPLACED",
        "OldURL": "http://a.com", "OldLine": 1, "OldCommentLine": 1,
        "NewURL": "http://b.com", "NewLine": 1, "NewCommentLine": 1,
    }
    assert modified["Changes"]["1"]["Type"] == "ADDED"
    assert modified["Changes"]["1"]["NewURL"] == "http://c.com"
    assert modified["Changes"]["1"]["NewLine"] == 4
    assert "Errors" not in modified

    deleted = lines[2]["Changes"]
    assert [c["OldURL"] for c in deleted.values()] == ["http://b.com", "http://c.com"]
    assert all(c["Type"] == "DELETED" for c in deleted.values())

    summary = miner.generate_summary()
    assert summary['commits_analyzed'] == 3
    assert summary['records'] == {"ADDED": 2, "DELETED": 2, "REPLACED": 1, "REPLACED_AND_ADDED": 0}


def test_other_language_reports_nothing():
    with sample_repository() as (path, shas):
        _miner, lines = mine_lines(LocalRepository(path), FileType.PYTHON, shas)
    assert lines == []


def test_unknown_commit_is_skipped():
    """An unresolvable identifier is logged and the run continues."""
    with sample_repository() as (path, shas):
        repository = LocalRepository(path)
        with pytest.raises(UnknownRevisionError):
            repository.get_commit("no-such-revision")
        miner, lines = mine_lines(repository, FileType.JAVA, ["no-such-revision", shas[0]])

    assert len(lines) == 1
    assert miner.stats['commits_skipped'] == 1
    assert miner.stats['commits_analyzed'] == 1


def test_modify_without_url_lines_is_skipped():
    """A patch that touches no URL line is not analyzed."""
    miner = UrlChangeMiner(MagicMock(), FileType.JAVA)
    changed = ChangedFile(
        change_kind=ChangeKind.MODIFY,
        old_path='A.java',
        new_path='A.java',
        read_old=MagicMock(side_effect=AssertionError("blob should not be read")),
        read_new=MagicMock(side_effect=AssertionError("blob should not be read")),
        patch="@@ -2 +2 @@\n-int x;\n+int y;\n",
    )
    assert miner.analyze_file(changed) == []


def test_rename_changing_type():
    """A rename to another file type reports the old side as deleted."""
    miner = UrlChangeMiner(MagicMock(), FileType.JAVA)
    changed = ChangedFile(
        change_kind=ChangeKind.RENAME,
        old_path='A.java',
        new_path='A.kt',
        read_old=lambda: b'// http://a.com\nclass A {}\n',
        read_new=lambda: b'// http://a.com\nclass A\n',
        patch="",
    )
    results = miner.analyze_file(changed)
    assert len(results) == 1
    assert results[0].path == 'A.java'
    assert results[0].edit_type == "DELETED"
    assert results[0].records[0].old.url == 'http://a.com'


def test_missing_side_is_empty():
    """An unreadable blob counts as a revision without URLs."""
    miner = UrlChangeMiner(MagicMock(), FileType.JAVA)
    changed = ChangedFile(
        change_kind=ChangeKind.MODIFY,
        old_path='A.java',
        new_path='A.java',
        read_old=lambda: None,
        read_new=lambda: b'// http://a.com\nclass A {}\n',
        patch=None,
    )
    results = miner.analyze_file(changed)
    assert [r.change_type.value for r in results[0].records] == ["ADDED"]


def test_tokenizer_failure_keeps_other_side():
    """A side that cannot be tokenized is recorded; the other side is still reported."""
    old_blob = b'// http://old.com\nclass A {}\n'
    new_blob = b'// http://new.com\nclass A {}\n'

    def failing_read_comments(file_type, data):
        if data == old_blob:
            raise TokenizerError("java parser failed: boom")
        return read_comments(file_type, data)

    changed = ChangedFile(
        change_kind=ChangeKind.MODIFY,
        old_path='A.java',
        new_path='A.java',
        read_old=lambda: old_blob,
        read_new=lambda: new_blob,
        patch="@@ -1 +1 @@\n-// http://old.com\n+// http://new.com\n",
    )
    repository = MagicMock()
    repository.get_commit.return_value = CommitChanges('c0ffee', 'Edit', '2020-01-02T03:04:05Z', [changed])

    with patch('url_miner.read_comments', side_effect=failing_read_comments):
        miner, lines = mine_lines(repository, FileType.JAVA, ['c0ffee'])

    assert len(lines) == 1
    assert lines[0]["Errors"] == ["java parser failed: boom"]
    assert lines[0]["Changes"] == {
        "0": {"Type": "ADDED", "NewURL": "http://new.com", "NewLine": 1, "NewCommentLine": 1},
    }
    assert miner.stats['files_with_errors'] == 1


def test_utf16_blob_occurrences():
    """UTF-16 content with a byte-order mark is decoded before the URL check."""
    data = b'\xff\xfe' + '// http://a.com\nclass A {}\n'.encode('utf-16-le')
    assert [o.url for o in find_url_occurrences(FileType.JAVA, data)] == ['http://a.com']
    assert find_url_occurrences(FileType.JAVA, b'\xff\xfe' + 'class A {}\n'.encode('utf-16-le')) == []


def test_find_git_dir():
    with sample_repository() as (path, _shas):
        git_dir = find_git_dir(path)
        assert git_dir is not None and git_dir.name == '.git'
        assert make_repo_name(git_dir) == f"{os.path.basename(os.path.realpath(path))}/.git"
        assert find_git_dir(os.path.join(path, 'Foo.java')) is None


def test_open_non_repository():
    path = tempfile.mkdtemp()
    try:
        with pytest.raises(RepositoryOpenError):
            LocalRepository(path)
    finally:
        shutil.rmtree(path, ignore_errors=True)


# -----------------------------
# Command line
# -----------------------------

def test_read_target_list():
    fd, path = tempfile.mkstemp(suffix='.txt')
    try:
        with os.fdopen(fd, 'w') as f:
            f.write("abc123\n\n  def456  \n")
        assert read_target_list(path) == ["abc123", "def456"]
    finally:
        os.remove(path)
    assert read_target_list(path) == []


def test_main_writes_jsonl():
    with sample_repository() as (path, shas):
        work = tempfile.mkdtemp()
        try:
            commits = os.path.join(work, 'commits.txt')
            output = os.path.join(work, 'out.jsonl')
            with open(commits, 'w') as f:
                f.write("\n".join(shas) + "\n")

            assert main([path, 'java', commits, '--output', output]) == 0
            with open(output, encoding='utf-8') as f:
                lines = [json.loads(line) for line in f]
        finally:
            shutil.rmtree(work, ignore_errors=True)

    assert [line["FileEditType"] for line in lines] == ["ADDED", "MODIFIED", "DELETED"]


def test_main_usage_errors():
    """Wrong argument counts and unknown languages print usage and exit."""
    with pytest.raises(SystemExit) as exc:
        main(['only-one-argument'])
    assert exc.value.code == 2
    with pytest.raises(SystemExit):
        main(['repo', 'cobol', 'commits.txt'])


def test_main_bad_repository():
    path = tempfile.mkdtemp()
    try:
        assert main([path, 'java', os.path.join(path, 'missing.txt')]) == 1
    finally:
        shutil.rmtree(path, ignore_errors=True)


# -----------------------------
# GitHub backend
# -----------------------------

def github_commit():
    file = MagicMock()
    file.status = 'modified'
    file.filename = 'src/A.java'
    file.previous_filename = None
    file.patch = "@@ -1,2 +1,2 @@\n-// http://old.com\n+// http://new.com\n class A {}"

    commit = MagicMock()
    commit.sha = 'c0ffee'
    commit.files = [file]
    commit.parents = [MagicMock(sha='bada55')]
    commit.commit.message = "Fix link\n\nbody"
    commit.commit.committer.date = datetime(2020, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    return commit


def test_github_backend():
    """File contents are fetched at the parent and the commit."""
    contents = {
        'bada55': b'// http://old.com\nclass A {}',
        'c0ffee': b'// http://new.com\nclass A {}',
    }
    with patch('url_miner.Github') as github_cls:
        gh_repo = github_cls.return_value.get_repo.return_value
        gh_repo.get_commit.return_value = github_commit()
        gh_repo.get_contents.side_effect = lambda path, ref: MagicMock(decoded_content=contents[ref])

        repository = GitHubRepository('owner/repo', token='test-token')
        _miner, lines = mine_lines(repository, FileType.JAVA, ['c0ffee'])

    assert len(lines) == 1
    assert lines[0]["CommitTime"] == "2020-01-02T03:04:05Z"
    assert lines[0]["ShortMessage"] == "Fix link"
    assert lines[0]["File"] == "src/A.java"
    assert lines[0]["Changes"]["0"]["Type"] == "REPLACED"
    assert lines[0]["Changes"]["0"]["NewURL"] == "http://new.com"


def test_github_unknown_commit():
    with patch('url_miner.Github') as github_cls:
        gh_repo = github_cls.return_value.get_repo.return_value
        gh_repo.get_commit.side_effect = GithubException(422, {"message": "No commit found"}, None)
        repository = GitHubRepository('owner/repo', token='test-token')
        with pytest.raises(UnknownRevisionError):
            repository.get_commit('nope')


def test_github_rate_limited():
    with patch('url_miner.Github') as github_cls:
        github_cls.return_value.get_repo.side_effect = GithubException(403, {"message": "rate limit"}, None)
        with pytest.raises(RepositoryOpenError):
            GitHubRepository('owner/repo', token='test-token')


def main_tests():
    """Run all tests."""
    print("=" * 60)
    print("URL Miner Test Suite")
    print("=" * 60)

    tests = [
        value for name, value in sorted(globals().items())
        if name.startswith('test_') and callable(value)
    ]

    failed = 0
    for test in tests:
        try:
            test()
            print(f"✓ {test.__name__}")
        except Exception as e:
            failed += 1
            print(f"✗ {test.__name__}: {e!r}")

    print(f"\nPassed: {len(tests) - failed}/{len(tests)}")
    return 1 if failed else 0


if __name__ == '__main__':
    exit(main_tests())
