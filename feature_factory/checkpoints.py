"""
Git checkpoints for phase rollback.

Before each phase the orchestrator tags HEAD with a deterministic name:

    ff-checkpoint/<session_id>/pre-<phase_index>-<phase-slug>

Rolling back resets tracked files to that commit and removes untracked files,
leaving files matched by ignore rules in place.

All operations fail soft: they return a CheckpointResult instead of raising.
"""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from feature_factory.logger import FactoryLogger

TAG_PREFIX = "ff-checkpoint"


def sanitize_phase_slug(phase_name: str) -> str:
    """
    Turn a phase name into a slug safe for git tag names.

    Lower-cases, collapses every run of non-alphanumeric characters into one
    hyphen and strips leading and trailing hyphens.
    """
    slug = re.sub(r"[^a-z0-9]+", "-", phase_name.lower())
    return slug.strip("-")


def checkpoint_tag_name(session_id: str, phase_index: int, phase_name: str) -> str:
    """Build the deterministic checkpoint tag name for a phase."""
    return f"{TAG_PREFIX}/{session_id}/pre-{phase_index}-{sanitize_phase_slug(phase_name)}"


def session_tag_prefix(session_id: str) -> str:
    """Tag prefix shared by every checkpoint of a session."""
    return f"{TAG_PREFIX}/{session_id}/"


@dataclass
class CheckpointResult:
    """Result from a checkpoint operation."""
    success: bool
    tag_name: Optional[str] = None
    commit_hash: Optional[str] = None
    skipped: bool = False          # Not a git repository
    error: Optional[str] = None


class CheckpointManager:
    """
    Creates, restores and cleans up checkpoint tags in one working directory.
    """

    def __init__(
        self,
        working_directory: str | Path,
        logger: Optional[FactoryLogger] = None,
        timeout: int = 60,
    ) -> None:
        """
        Initialize the checkpoint manager.

        Args:
            working_directory: Directory of the repository to checkpoint.
            logger: Optional logger for recording operations.
            timeout: Timeout in seconds for each git command.
        """
        self.working_directory = Path(working_directory)
        self._logger = logger
        self._timeout = timeout

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "checkpoints"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _run_git(self, args: list[str]) -> tuple[bool, str, str]:
        """
        Run a git command in the working directory.

        Returns:
            Tuple of (success, stdout, stderr).
        """
        try:
            result = subprocess.run(
                ["git"] + args,
                cwd=str(self.working_directory),
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
            return result.returncode == 0, result.stdout.strip(), result.stderr.strip()
        except FileNotFoundError:
            return False, "", "git executable not found"
        except subprocess.TimeoutExpired:
            return False, "", "git command timed out"
        except OSError as e:
            return False, "", str(e)

    def is_repository(self) -> bool:
        """Whether the working directory is inside a git repository."""
        if not self.working_directory.is_dir():
            return False
        success, _, _ = self._run_git(["rev-parse", "--git-dir"])
        return success

    def _tag_commit(self, tag_name: str) -> Optional[str]:
        """Commit hash a tag points at, or None if the tag does not exist."""
        success, stdout, _ = self._run_git(
            ["rev-parse", "--verify", "--quiet", f"refs/tags/{tag_name}^{{commit}}"]
        )
        return stdout if success and stdout else None

    def create_checkpoint(
        self,
        session_id: str,
        phase_name: str,
        phase_index: int,
    ) -> CheckpointResult:
        """
        Tag HEAD before a phase runs.

        Recreating an existing checkpoint is a success that returns the
        existing tag, so phase retries never fail here.

        Args:
            session_id: Owning session.
            phase_name: Display name of the phase (slugified into the tag).
            phase_index: Index of the phase in its workflow.

        Returns:
            CheckpointResult; ``skipped`` is True outside a git repository.
        """
        if not self.is_repository():
            self._log("checkpoint_skipped", {
                "session_id": session_id,
                "reason": "not a git repository",
            }, level="warn")
            return CheckpointResult(
                success=False,
                skipped=True,
                error="Not a git repository",
            )

        tag_name = checkpoint_tag_name(session_id, phase_index, phase_name)

        existing = self._tag_commit(tag_name)
        if existing:
            self._log("checkpoint_exists", {"tag": tag_name, "commit": existing})
            return CheckpointResult(success=True, tag_name=tag_name, commit_hash=existing)

        success, commit_hash, stderr = self._run_git(["rev-parse", "HEAD"])
        if not success:
            self._log("checkpoint_failed", {"tag": tag_name, "error": stderr}, level="warn")
            return CheckpointResult(
                success=False,
                tag_name=tag_name,
                error=stderr or "Could not resolve HEAD",
            )

        success, _, stderr = self._run_git(["tag", tag_name, commit_hash])
        if not success:
            self._log("checkpoint_failed", {"tag": tag_name, "error": stderr}, level="warn")
            return CheckpointResult(
                success=False,
                tag_name=tag_name,
                error=stderr or "Failed to create checkpoint",
            )

        self._log("checkpoint_created", {"tag": tag_name, "commit": commit_hash})
        return CheckpointResult(success=True, tag_name=tag_name, commit_hash=commit_hash)

    def rollback_to_checkpoint(self, tag_name: str) -> CheckpointResult:
        """
        Restore the working tree to a checkpoint.

        Runs ``git reset --hard <tag>`` then ``git clean -fd``. Ignored files
        survive because ``-x`` is not passed.

        Args:
            tag_name: Checkpoint tag to restore.

        Returns:
            CheckpointResult with ``error`` populated on failure, including
            when the tag does not exist.
        """
        commit_hash = self._tag_commit(tag_name)
        if commit_hash is None:
            error = f"Checkpoint not found: {tag_name}"
            self._log("rollback_failed", {"tag": tag_name, "error": error}, level="error")
            return CheckpointResult(success=False, tag_name=tag_name, error=error)

        success, _, stderr = self._run_git(["reset", "--hard", commit_hash])
        if not success:
            self._log("rollback_failed", {"tag": tag_name, "error": stderr}, level="error")
            return CheckpointResult(success=False, tag_name=tag_name, error=stderr or "Rollback failed")

        success, _, stderr = self._run_git(["clean", "-fd"])
        if not success:
            self._log("rollback_failed", {"tag": tag_name, "error": stderr}, level="error")
            return CheckpointResult(success=False, tag_name=tag_name, error=stderr or "Clean failed")

        self._log("rollback_completed", {"tag": tag_name, "commit": commit_hash})
        return CheckpointResult(success=True, tag_name=tag_name, commit_hash=commit_hash)

    def list_checkpoints(self, session_id: str) -> list[str]:
        """List checkpoint tags belonging to a session, in tag order."""
        prefix = session_tag_prefix(session_id)
        success, stdout, _ = self._run_git(["tag", "-l", f"{prefix}*"])
        if not success or not stdout:
            return []
        return [line for line in stdout.splitlines() if line.startswith(prefix)]

    def cleanup_checkpoints(self, session_id: str) -> list[str]:
        """
        Delete every checkpoint tag of a session.

        Returns:
            Names of the tags that were deleted.
        """
        deleted = []
        for tag_name in self.list_checkpoints(session_id):
            success, _, stderr = self._run_git(["tag", "-d", tag_name])
            if success:
                deleted.append(tag_name)
            else:
                self._log("checkpoint_delete_failed", {
                    "tag": tag_name,
                    "error": stderr,
                }, level="warn")
        if deleted:
            self._log("checkpoints_cleaned", {"session_id": session_id, "count": len(deleted)})
        return deleted
