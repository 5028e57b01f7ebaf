#!/usr/bin/env python3
"""
Example script demonstrating how to use the UrlChangeMiner programmatically.
"""

import sys

from comment_reader import FileType
from url_miner import LocalRepository, UrlChangeMiner


def main():
    """Example usage of the UrlChangeMiner class."""

    # Path to any local clone; defaults to the current directory
    repo_path = sys.argv[1] if len(sys.argv) > 1 else '.'
    repository = LocalRepository(repo_path)

    print("="*60)
    print("Comment URL Mining Example")
    print("="*60)
    print()

    # Example 1: the last 20 commits of the current branch, Python files only
    print("Example 1: Mining Python comments (last 20 commits)...")
    print("-" * 60)
    revs = [c.hexsha for c in repository.repo.iter_commits('HEAD', max_count=20)]
    miner = UrlChangeMiner(repository, FileType.PYTHON)

    for rev in revs:
        result = miner.analyze_commit(rev)
        if result is None:
            continue
        for analysis in result["files"]:
            print(f"{result['commit'].sha[:7]} {analysis.path} ({analysis.edit_type})")
            for record in analysis.records:
                old = record.old.url if record.old else ''
                new = ', '.join(o.url for o in record.new)
                print(f"  {record.change_type.value:<20} {old} -> {new}")

    # Example 2: write the same commits as JSONL
    output_file = 'example_url_changes.jsonl'
    print(f"\nExample 2: Writing JSONL to {output_file}...")
    print("-" * 60)
    miner = UrlChangeMiner(repository, FileType.PYTHON)
    with open(output_file, 'w', encoding='utf-8') as out:
        miner.mine(revs, out)

    summary = miner.generate_summary()

    print("\n" + "="*60)
    print("SUMMARY")
    print("="*60)
    print(f"Repository: {summary['repository']}")
    print(f"Commits analyzed: {summary['commits_analyzed']}")
    print(f"Files reported: {summary['files_reported']}")
    print(f"\nChange records by type:")
    for change_type, count in summary['records'].items():
        print(f"  - {change_type}: {count}")

    print(f"\nResults saved to: {output_file}")
    print("\nExample complete!")


if __name__ == '__main__':
    main()
