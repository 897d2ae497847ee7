"""GitHub-backed change-set publishing and review status via the ``gh`` CLI."""

from __future__ import annotations

import json
import re
import shutil
import subprocess
from pathlib import Path
from typing import Any

from wavepilot import log
from wavepilot.errors import ServiceError
from wavepilot.poller import normalize_decision
from wavepilot.services import (
    ChangeSet,
    ChangeSetPublisher,
    ReviewDecision,
    ReviewService,
    ReviewStatusReport,
)

_PR_URL = re.compile(r"/pull/(\d+)")


def _gh(*args: str, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
    if not shutil.which("gh"):
        raise ServiceError("gh CLI not found; install it or run in manual mode")
    return subprocess.run(["gh", *args], capture_output=True, text=True, cwd=cwd)


def pr_number_from_url(url: str) -> str:
    m = _PR_URL.search(url)
    return m.group(1) if m else url.strip()


class GhChangeSetPublisher(ChangeSetPublisher):
    """Opens and merges GitHub pull requests."""

    def __init__(self, cwd: Path | None = None, draft: bool = False, merge_method: str = "merge") -> None:
        self.cwd = cwd
        self.draft = draft
        self.merge_method = merge_method

    def publish(self, branch: str, target: str, title: str, body: str = "") -> ChangeSet:
        cmd = ["pr", "create", "--base", target, "--head", branch, "--title", title,
               "--body", body or f"Automated wave PR for {branch}"]
        if self.draft:
            cmd.append("--draft")
        r = _gh(*cmd, cwd=self.cwd)
        if r.returncode != 0:
            raise ServiceError(f"Failed to create PR for {branch}: {r.stderr.strip()}")
        url = r.stdout.strip().splitlines()[-1] if r.stdout.strip() else ""
        log.success(f"PR created: {url}")
        return ChangeSet(ref=pr_number_from_url(url), url=url)

    def merge(self, ref: str) -> bool:
        r = _gh("pr", "merge", ref, f"--{self.merge_method}", cwd=self.cwd)
        if r.returncode != 0:
            log.warn(f"Failed to merge PR {ref}: {r.stderr.strip()}")
            return False
        log.success(f"Merged PR {ref}")
        return True


def _is_stale(review: dict[str, Any], since: str | None, head: str | None) -> bool:
    """A review left on another commit than *head*, or before *since*, predates the current publish."""
    commit = review.get("commit_id")
    if head and commit:
        return commit != head
    submitted = review.get("submitted_at")
    return bool(since and submitted and submitted < since)


def summarize_reviews(reviews: list[dict[str, Any]], reviewer_pattern: str, *,
                      since: str | None = None, head: str | None = None) -> ReviewStatusReport:
    """Reduce raw GitHub review objects to a decision for reviewers matching *reviewer_pattern*.

    The decision follows the most recent matching review. The blocking count
    is the number of matching reviewers whose latest review requests changes.
    Stale reviews (see :func:`_is_stale`) are dropped first, so a loop-back
    waits for a review of the republished head.
    """
    pattern = re.compile(reviewer_pattern, re.IGNORECASE)
    matching = [
        r for r in reviews
        if pattern.search(((r.get("user") or {}).get("login")) or "")
        and not _is_stale(r, since, head)
    ]
    if not matching:
        return ReviewStatusReport()

    matching.sort(key=lambda r: r.get("submitted_at") or "")
    latest_by_user: dict[str, dict[str, Any]] = {}
    for r in matching:
        latest_by_user[r["user"]["login"]] = r

    latest = matching[-1]
    blocking = sum(1 for r in latest_by_user.values() if r.get("state") == "CHANGES_REQUESTED")
    return ReviewStatusReport(
        decision=normalize_decision(latest.get("state")),
        blocking_count=blocking,
        reviewer=latest["user"]["login"],
    )


class GhReviewService(ReviewService):
    """Reads pull request reviews left by an automated reviewer."""

    def __init__(self, reviewer_pattern: str = "claude", cwd: Path | None = None) -> None:
        self.reviewer_pattern = reviewer_pattern
        self.cwd = cwd

    def get_review_status(self, ref: str, *, since: str | None = None,
                          head: str | None = None) -> ReviewStatusReport:
        r = _gh("api", f"repos/{{owner}}/{{repo}}/pulls/{ref}/reviews", cwd=self.cwd)
        if r.returncode != 0:
            log.warn(f"Could not fetch reviews for PR {ref}: {r.stderr.strip()}")
            return ReviewStatusReport(decision=ReviewDecision.PENDING)
        try:
            reviews = json.loads(r.stdout or "[]")
        except json.JSONDecodeError as e:
            raise ServiceError(f"Unexpected response from gh api for PR {ref}") from e
        return summarize_reviews(reviews, self.reviewer_pattern, since=since, head=head)
