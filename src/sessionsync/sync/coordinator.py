"""
Sync coordinator -- the command center for moving conversations.

    upload    ->  decide -> pack -> snapshot | delta -> commit metadata
    download  ->  metadata -> snapshot? -> deltas in order -> merge -> commit
    save      ->  git check -> push branch -> upload -> publish session -> boundary
    resume    ->  session -> git check -> checkout + pull -> verify commit -> download

Local state (sync metadata, the message stream, boundaries) changes
only after the remote side acknowledged everything. A failure or a
cancellation part-way through leaves it exactly as it was.

Fallback policy: a delta rejected because another device uploaded
first escalates once to a full snapshot; a download whose deltas do
not line up is retried once from the full snapshot. If the fallback
fails too, ``FatalSyncError`` is raised. Every other failure comes
back as a failed ``SyncResult``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional, TypeVar, Union

from .. import SYNC_HOME
from ..audit import audit_event
from ..errors import (
    ConflictBaseMismatch,
    ErrorKind,
    FatalSyncError,
    GitStateError,
    InvalidAppend,
    Issue,
    NetworkTimeout,
    SessionNotFound,
    SessionSyncError,
    SyncError,
    SyncInconsistencyError,
)
from ..git import VersionControl
from ..linker import SessionLinker, SessionStore
from ..models import GitState, Message, Session, SyncMetadata
from ..stream import MessageStore, MessageStream
from ..verifier import GitSafetyCheck, GitStateVerifier, Resolution
from .backends import BlobStore, create_blob_store
from .cipher import Cipher, FernetCipher, NullCipher
from .compression import PayloadCodec, decide
from .models import (
    CompressionStats,
    DeltaRequest,
    NoOp,
    ResumeResult,
    SaveResult,
    SyncAction,
    SyncConfig,
    SyncDirection,
    SyncResult,
)
from .state import SyncStateStore, load_config

logger = logging.getLogger("sessionsync.sync.coordinator")

T = TypeVar("T")


class SyncCoordinator:
    """Orchestrates conversation sync between this device and the blob store.

    Args:
        home: Sync home directory. Defaults to ``SESSIONSYNC_HOME``.
        blob_store: Remote store. Defaults to the one in ``config.yaml``.
        vcs: Version-control collaborator; required for save/resume.
        cipher: Encryption collaborator. Defaults to Fernet when the
            config asks for encryption, pass-through otherwise.
        key: Key material for the cipher.
        config: Overrides ``config.yaml``.
    """

    def __init__(
        self,
        home: Optional[Path] = None,
        blob_store: Optional[BlobStore] = None,
        vcs: Optional[VersionControl] = None,
        cipher: Optional[Cipher] = None,
        key: bytes = b"",
        config: Optional[SyncConfig] = None,
    ) -> None:
        self.home = (home or Path(SYNC_HOME)).expanduser()
        self.home.mkdir(parents=True, exist_ok=True)

        self.config = config or load_config(self.home)
        if cipher is None:
            if self.config.encrypt and not key:
                raise ValueError("Encryption is enabled but no key was provided")
            cipher = FernetCipher() if self.config.encrypt else NullCipher()

        self.messages = MessageStore(self.home)
        self.state = SyncStateStore(self.home)
        self.linker = SessionLinker(self.home)
        self.sessions = SessionStore(self.home)
        self.blob_store = blob_store or create_blob_store(self.config.blob_store, self.home)
        self.vcs = vcs
        self.codec = PayloadCodec(self.config.compression_level, cipher, key)
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, conversation_id: str) -> asyncio.Lock:
        """The per-conversation lock held for every sync, save and resume."""
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Network calls
    # ------------------------------------------------------------------

    async def _call(
        self,
        operation: str,
        factory: Callable[[], Awaitable[T]],
        max_attempts: Optional[int] = None,
    ) -> tuple[T, int]:
        """Run a blob store call under the network timeout, with retries.

        Only retryable failures (timeouts, store unavailable) are retried,
        with exponential backoff between attempts.

        Returns:
            The call's result and the number of attempts it took.

        Raises:
            SyncError: ``RETRY_EXHAUSTED`` once the budget is spent, or the
                original error if it was not retryable.
        """
        attempts = max_attempts or self.config.max_attempts
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await asyncio.wait_for(factory(), timeout=self.config.network_timeout)
                return result, attempt
            except asyncio.TimeoutError:
                error: SyncError = NetworkTimeout(
                    f"{operation} timed out after {self.config.network_timeout}s",
                    operation=operation,
                )
            except SyncError as exc:
                if not exc.retryable:
                    raise
                error = exc

            if attempt >= attempts:
                logger.warning("%s failed after %d attempt(s): %s", operation, attempt, error)
                raise SyncError(
                    f"{operation} failed after {attempt} attempt(s): {error}",
                    kind=ErrorKind.RETRY_EXHAUSTED,
                    operation=operation,
                    attempts=attempt,
                    last_error=error.issue.kind.value,
                ) from error

            delay = min(self.config.backoff_base * (2 ** (attempt - 1)), self.config.backoff_max)
            logger.info(
                "%s attempt %d/%d failed (%s), retrying in %.2fs",
                operation, attempt, attempts, error.issue.kind.value, delay,
            )
            await asyncio.sleep(delay)

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def upload(self, conversation_id: str) -> SyncResult:
        """Push new messages of a conversation to the blob store.

        Raises:
            ConversationNotFound: If the conversation does not exist locally.
            FatalSyncError: If the snapshot fallback after a delta
                conflict fails as well.
        """
        async with self.lock(conversation_id):
            return await self._upload(conversation_id)

    async def _upload(self, conversation_id: str) -> SyncResult:
        stream = self.messages.open(conversation_id, must_exist=True)
        metadata = self.state.load(conversation_id)
        total = stream.length()
        request = decide(conversation_id, total, metadata, self.config.snapshot_threshold)

        result = SyncResult(conversation_id=conversation_id, direction=SyncDirection.UPLOAD)
        if isinstance(request, NoOp):
            logger.debug("Upload of %s skipped: %s", conversation_id, request.reason)
            result.metadata = metadata
            return result

        try:
            if isinstance(request, DeltaRequest):
                try:
                    result.stats, result.attempts = await self._push_delta(stream, request)
                    result.action = SyncAction.DELTA
                    result.start, result.end = request.start, request.end
                except ConflictBaseMismatch as exc:
                    logger.warning(
                        "Delta for %s rejected (server total %d, base %d); "
                        "escalating to full snapshot",
                        conversation_id, exc.expected_base, exc.base_index,
                    )
                    try:
                        result.stats, attempts = await self._push_snapshot(stream, total, max_attempts=1)
                    except SessionSyncError as fallback_exc:
                        self._audit("SYNC_FATAL", f"Snapshot fallback failed for {conversation_id}")
                        raise FatalSyncError(
                            f"Snapshot fallback for {conversation_id} failed: {fallback_exc}",
                            cause=fallback_exc,
                            conversation_id=conversation_id,
                        ) from fallback_exc
                    result.attempts = 1 + attempts
                    result.action = SyncAction.ESCALATED_SNAPSHOT
                    result.start, result.end = 0, total
            else:
                result.stats, result.attempts = await self._push_snapshot(stream, total)
                result.action = SyncAction.SNAPSHOT
                result.start, result.end = 0, total
        except FatalSyncError:
            raise
        except SessionSyncError as exc:
            logger.error("Upload of %s failed: %s", conversation_id, exc)
            result.ok = False
            result.action = SyncAction.NOOP
            result.issue = exc.issue
            result.metadata = metadata
            return result

        snapshot = result.action in (SyncAction.SNAPSHOT, SyncAction.ESCALATED_SNAPSHOT)
        updated = metadata.model_copy(update={
            "last_synced_message_index": max(metadata.last_synced_message_index, total),
            "last_snapshot_index": total if snapshot else metadata.last_snapshot_index,
            "last_synced_timestamp": datetime.now(timezone.utc),
            "total_messages": total,
        })
        self.state.save(updated)
        result.metadata = updated

        logger.info(
            "Uploaded %s of %s: [%d, %d), %s",
            result.action.value, conversation_id, result.start, result.end,
            _format_stats(result.stats),
        )
        self._audit(
            "SYNC_UPLOAD",
            f"{result.action.value} {conversation_id} [{result.start}, {result.end})",
            {"conversation_id": conversation_id, "action": result.action.value},
        )
        return result

    async def _push_snapshot(
        self,
        stream: MessageStream,
        total: int,
        max_attempts: Optional[int] = None,
    ) -> tuple[CompressionStats, int]:
        payload = self.codec.pack(stream.range(0, total))
        _, attempts = await self._call(
            "upload_snapshot",
            lambda: self.blob_store.upload_snapshot(
                stream.conversation_id, payload.data, total, stats=payload.stats,
            ),
            max_attempts=max_attempts,
        )
        return payload.stats, attempts

    async def _push_delta(
        self, stream: MessageStream, request: DeltaRequest
    ) -> tuple[CompressionStats, int]:
        payload = self.codec.pack(stream.range(request.start, request.end))
        _, attempts = await self._call(
            "upload_delta",
            lambda: self.blob_store.upload_delta(
                stream.conversation_id, request.base_index, payload.data,
                request.message_count, stats=payload.stats,
            ),
        )
        return payload.stats, attempts

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    async def download(self, conversation_id: str) -> SyncResult:
        """Pull a conversation from the blob store and merge it locally.

        Raises:
            FatalSyncError: If the stored deltas stay inconsistent even
                after a fresh download from the full snapshot.
        """
        async with self.lock(conversation_id):
            return await self._download(conversation_id)

    async def _download(self, conversation_id: str) -> SyncResult:
        stream = self.messages.open(conversation_id)
        metadata = self.state.load(conversation_id)
        try:
            try:
                return await self._merge(stream, metadata, full=metadata.is_empty)
            except SyncInconsistencyError as exc:
                logger.warning(
                    "Download of %s inconsistent (%s); retrying from full snapshot",
                    conversation_id, exc,
                )
            try:
                return await self._merge(stream, metadata, full=True, fallback=True)
            except SessionSyncError as fallback_exc:
                self._audit("SYNC_FATAL", f"Full snapshot download failed for {conversation_id}")
                raise FatalSyncError(
                    f"Full snapshot download for {conversation_id} failed: {fallback_exc}",
                    cause=fallback_exc,
                    conversation_id=conversation_id,
                ) from fallback_exc
        except FatalSyncError:
            raise
        except SessionSyncError as exc:
            logger.error("Download of %s failed: %s", conversation_id, exc)
            return SyncResult(
                conversation_id=conversation_id,
                direction=SyncDirection.DOWNLOAD,
                ok=False,
                issue=exc.issue,
                metadata=metadata,
            )

    async def _merge(
        self,
        stream: MessageStream,
        metadata: SyncMetadata,
        full: bool,
        fallback: bool = False,
    ) -> SyncResult:
        """Rebuild the conversation in memory, then commit it locally.

        Nothing is written until every delta has been fetched and
        checked, so an aborted merge leaves no trace.
        """
        conversation_id = stream.conversation_id
        result = SyncResult(conversation_id=conversation_id, direction=SyncDirection.DOWNLOAD)
        cloud, attempts = await self._call(
            "get_metadata", lambda: self.blob_store.get_metadata(conversation_id)
        )
        result.attempts += attempts

        if cloud.total_messages == 0:
            logger.debug("Nothing stored for %s", conversation_id)
            result.metadata = metadata
            return result

        if full:
            snapshot, attempts = await self._call(
                "fetch_snapshot", lambda: self.blob_store.fetch_snapshot(conversation_id)
            )
            result.attempts += attempts
            merged = self.codec.unpack(snapshot.payload)
            if len(merged) != snapshot.message_count:
                raise SyncInconsistencyError(
                    f"Snapshot holds {len(merged)} messages, expected {snapshot.message_count}",
                    conversation_id=conversation_id,
                )
            after = snapshot.message_count
            result.action = SyncAction.FULL_SNAPSHOT if fallback else SyncAction.SNAPSHOT
            result.start = 0
        else:
            base = metadata.last_synced_message_index
            if base > stream.length():
                raise SyncInconsistencyError(
                    f"Local stream has {stream.length()} messages, "
                    f"sync state claims {base}",
                    conversation_id=conversation_id,
                )
            if cloud.total_messages == base:
                result.metadata = metadata
                result.start = result.end = base
                return result
            merged = stream.range(0, base)
            after = base
            result.action = SyncAction.DELTA
            result.start = base

        refs, attempts = await self._call(
            "list_deltas", lambda: self.blob_store.list_deltas(conversation_id, after)
        )
        result.attempts += attempts
        for ref in refs:
            if ref.base_index != len(merged):
                raise SyncInconsistencyError(
                    f"Delta {ref.delta_id} starts at {ref.base_index}, "
                    f"merged stream has {len(merged)} messages",
                    conversation_id=conversation_id,
                    delta_id=ref.delta_id,
                    base_index=ref.base_index,
                    merged_length=len(merged),
                )
            delta, attempts = await self._call(
                "fetch_delta",
                lambda ref=ref: self.blob_store.fetch_delta(conversation_id, ref.delta_id),
            )
            result.attempts += attempts
            messages = self.codec.unpack(delta.payload)
            if len(messages) != ref.message_count:
                raise SyncInconsistencyError(
                    f"Delta {ref.delta_id} holds {len(messages)} messages, "
                    f"expected {ref.message_count}",
                    conversation_id=conversation_id,
                    delta_id=ref.delta_id,
                )
            merged.extend(messages)

        if len(merged) != cloud.total_messages:
            raise SyncInconsistencyError(
                f"Merged {len(merged)} messages, store reports {cloud.total_messages}",
                conversation_id=conversation_id,
                merged_length=len(merged),
                total_messages=cloud.total_messages,
            )

        self._commit_merge(stream, merged)
        result.end = len(merged)

        updated = metadata.model_copy(update={
            "last_synced_message_index": max(metadata.last_synced_message_index, len(merged)),
            "last_snapshot_index": cloud.latest_snapshot_index,
            "last_synced_timestamp": datetime.now(timezone.utc),
            "total_messages": stream.length(),
        })
        self.state.save(updated)
        result.metadata = updated

        logger.info(
            "Downloaded %s of %s: [%d, %d), stored ratio %.3f",
            result.action.value, conversation_id, result.start, result.end,
            cloud.compression_ratio,
        )
        self._audit(
            "SYNC_DOWNLOAD",
            f"{result.action.value} {conversation_id} [{result.start}, {result.end})",
            {"conversation_id": conversation_id, "action": result.action.value},
        )
        return result

    def _commit_merge(self, stream: MessageStream, merged: list[Message]) -> None:
        """Append the merged tail to the local stream.

        The local stream must be a prefix of the merged result (or the
        other way round); anything else is a competing writer.
        """
        local_length = stream.length()
        shared = min(local_length, len(merged))
        local_ids = [m.id for m in stream.range(0, shared)]
        if local_ids != [m.id for m in merged[:shared]]:
            first = next(i for i, (a, b) in enumerate(zip(local_ids, merged)) if a != b.id)
            raise SyncInconsistencyError(
                f"Local stream diverges from the stored conversation at message {first}",
                conversation_id=stream.conversation_id,
                index=first,
            )
        try:
            stream.extend(merged[local_length:])
        except InvalidAppend as exc:
            raise SyncInconsistencyError(
                f"Stored messages cannot be appended locally: {exc}",
                conversation_id=stream.conversation_id,
            ) from exc

    # ------------------------------------------------------------------
    # Save / resume
    # ------------------------------------------------------------------

    def _require_vcs(self) -> VersionControl:
        if self.vcs is None:
            raise ValueError("A version-control collaborator is required for save/resume")
        return self.vcs

    async def _gate(
        self,
        resolutions: Iterable[Resolution],
        force: bool,
    ) -> tuple[GitSafetyCheck, list[Issue], bool]:
        """Run the git safety check and apply the caller's resolutions.

        Returns:
            The final check, the issues that stop the operation (empty
            if it may proceed), and whether it is waiting on a decision.
        """
        verifier = GitStateVerifier(self._require_vcs(), self.config.reachability_timeout)
        check = await verifier.check()
        if check.blocked:
            return check, list(check.errors), False

        chosen = list(resolutions)
        if check.warnings and Resolution.CANCEL in chosen:
            return check, list(check.warnings), False
        if check.warnings and chosen:
            try:
                check = await verifier.resolve(
                    check, chosen, timeout=self.config.network_timeout
                )
            except SessionSyncError as exc:
                return check, [exc.issue], False
            if check.blocked:
                return check, list(check.errors), False

        if check.warnings and not force:
            return check, list(check.warnings), True
        if check.warnings:
            logger.warning(
                "Proceeding past git warnings: %s",
                ", ".join(w.kind.value for w in check.warnings),
            )
        return check, [], False

    async def _push_branch(self, check: GitSafetyCheck) -> bool:
        """Publish local commits so another device can check out the session.

        Returns:
            True if anything was pushed.

        Raises:
            GitStateError: ``DIVERGENT`` if the branch is also behind its
                remote and a push would be rejected.
            SessionSyncError: If the push itself fails.
        """
        vcs = self._require_vcs()
        status = vcs.status()
        if not check.branch or status.ahead == 0:
            return False
        if not check.can_push:
            raise GitStateError(
                f"Branch {check.branch} is behind its remote; pull before saving",
                kind=ErrorKind.DIVERGENT,
                branch=check.branch,
                ahead=status.ahead,
                behind=status.behind,
            )
        timeout = self.config.network_timeout
        await self._call("git_push", lambda: vcs.push(check.branch, timeout))
        logger.info("Pushed %s to its remote", check.branch)
        return True

    async def save(
        self,
        conversation_id: str,
        working_directory: str = "",
        resolutions: Iterable[Resolution] = (),
        force: bool = False,
    ) -> SaveResult:
        """Upload a conversation and pin it to the current commit.

        Args:
            conversation_id: Conversation to save.
            working_directory: Recorded on the session for the resuming device.
            resolutions: Caller decisions for git warnings (stash, commit, ...).
            force: Proceed past unresolved warnings. Errors still block.

        Raises:
            ConversationNotFound: If the conversation does not exist locally.
            FatalSyncError: If the upload fallback fails.
        """
        async with self.lock(conversation_id):
            stream = self.messages.open(conversation_id, must_exist=True)
            check, issues, waiting = await self._gate(resolutions, force)
            if issues:
                self._audit("SESSION_SAVE_BLOCKED", f"{conversation_id}: {issues[0].message}")
                return SaveResult(ok=False, check=check, issues=issues, awaiting_resolution=waiting)
            if not check.commit:
                issue = Issue(kind=ErrorKind.COMMIT_NOT_FOUND, message="Repository has no commits yet")
                return SaveResult(ok=False, check=check, issues=[issue])

            try:
                pushed = await self._push_branch(check)
            except SessionSyncError as exc:
                logger.error("Save of %s blocked, branch not pushed: %s", conversation_id, exc)
                self._audit("SESSION_SAVE_BLOCKED", f"{conversation_id}: {exc}")
                return SaveResult(ok=False, check=check, issues=[exc.issue])

            sync = await self._upload(conversation_id)
            if not sync.ok:
                return SaveResult(ok=False, check=check, sync=sync, issues=[sync.issue])

            git_state = GitState(
                commit=check.commit, branch=check.branch, repository=check.repository_url,
            )
            session = Session(
                git_commit=check.commit,
                branch=check.branch,
                repository_url=check.repository_url,
                conversation_id=conversation_id,
                device_id=self.config.device_id,
                working_directory=working_directory,
                message_count=stream.length(),
            )
            try:
                await self._call(
                    "publish_session", lambda: self.blob_store.publish_session(session)
                )
            except SessionSyncError as exc:
                logger.error("Session for %s not published: %s", conversation_id, exc)
                return SaveResult(ok=False, check=check, sync=sync, issues=[exc.issue])

            self.linker.record(conversation_id, stream.length(), git_state)
            self.sessions.save(session)

        logger.info(
            "Saved session %s: %s at %s%s",
            session.session_id, conversation_id, session.git_commit[:8],
            " (branch pushed)" if pushed else "",
        )
        self._audit(
            "SESSION_SAVE",
            f"{session.session_id} {conversation_id}@{session.git_commit[:8]}",
            {"session_id": session.session_id, "conversation_id": conversation_id},
        )
        return SaveResult(ok=True, check=check, sync=sync, session=session)

    async def resume(
        self,
        session: Union[Session, str],
        resolutions: Iterable[Resolution] = (),
        force: bool = False,
    ) -> ResumeResult:
        """Check out a session's commit and restore its conversation.

        The conversation is only touched once the working copy is
        verified to be on the session's commit.

        Args:
            session: A session id, looked up locally and then in the blob
                store, or a ``Session`` handed over directly. Either way
                it is stored locally first.
            resolutions: Caller decisions for git warnings.
            force: Proceed past unresolved warnings. Errors still block.

        Raises:
            SessionNotFound: If the session id is unknown.
            SyncError: If the blob store could not be asked for the session.
            FatalSyncError: If the download fallback fails.
        """
        if isinstance(session, Session):
            self.sessions.save(session)
        else:
            session = await self._find_session(session)
        session_id = session.session_id
        conversation_id = session.conversation_id

        async with self.lock(conversation_id):
            check, issues, waiting = await self._gate(resolutions, force)
            if issues:
                self._audit("SESSION_RESUME_BLOCKED", f"{session_id}: {issues[0].message}")
                return ResumeResult(
                    ok=False, check=check, session=session,
                    issues=issues, awaiting_resolution=waiting,
                )

            try:
                notes = await self._checkout_session(session)
                self.linker.verify_resume(session.git_commit, self._require_vcs())
            except SessionSyncError as exc:
                logger.error("Resume of %s blocked: %s", session_id, exc)
                self._audit("SESSION_RESUME_BLOCKED", f"{session_id}: {exc}")
                return ResumeResult(ok=False, check=check, session=session, issues=[exc.issue])

            sync = await self._download(conversation_id)

        if not sync.ok:
            return ResumeResult(ok=False, check=check, session=session, sync=sync, issues=[sync.issue])

        restored = self.messages.open(conversation_id).length()
        if restored < session.message_count:
            logger.warning(
                "Session %s was saved with %d messages, only %d restored",
                session_id, session.message_count, restored,
            )
        self._audit(
            "SESSION_RESUME",
            f"{session_id} {conversation_id}@{session.git_commit[:8]}",
            {"session_id": session_id, "conversation_id": conversation_id},
        )
        return ResumeResult(ok=True, check=check, session=session, sync=sync, issues=notes)

    async def _find_session(self, session_id: str) -> Session:
        """Load a session from this device, or from the blob store.

        A session fetched from the store is kept locally afterwards.

        Raises:
            SessionNotFound: If neither knows the id.
        """
        try:
            return self.sessions.load(session_id)
        except SessionNotFound:
            logger.debug("Session %s not stored locally, asking %s", session_id, self.blob_store.name)
        session, _ = await self._call(
            "fetch_session", lambda: self.blob_store.fetch_session(session_id)
        )
        self.sessions.save(session)
        return session

    async def _checkout_session(self, session: Session) -> list[Issue]:
        """Move the working copy onto the session's commit.

        The session's branch is preferred, pulled first if it is behind
        its remote. HEAD is detached only if the branch does not lead to
        the commit; that comes back as a ``DETACHED_HEAD`` note.
        """
        vcs = self._require_vcs()
        target = vcs.rev_parse(session.git_commit)
        if vcs.status().commit == target:
            return []

        if session.branch:
            vcs.checkout(session.branch)
            status = vcs.status()
            if status.commit != target and status.behind:
                timeout = self.config.network_timeout
                await self._call("git_pull", lambda: vcs.pull(session.branch, timeout))
            if vcs.status().commit == target:
                return []

        vcs.checkout(target)
        logger.warning(
            "Session %s commit %s is not the tip of %s; HEAD is detached",
            session.session_id, target[:8], session.branch or "any branch",
        )
        return [Issue(
            kind=ErrorKind.DETACHED_HEAD,
            message=(
                f"HEAD detached at {target[:8]}; check out a branch "
                "before saving again"
            ),
            context={"commit": target, "branch": session.branch},
        )]

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def status(self, conversation_id: str) -> dict:
        """Local and remote view of one conversation."""
        metadata = self.state.load(conversation_id)
        local_total = self.messages.open(conversation_id).length()
        cloud, _ = await self._call(
            "get_metadata", lambda: self.blob_store.get_metadata(conversation_id)
        )
        return {
            "conversation_id": conversation_id,
            "local_messages": local_total,
            "unsynced": max(local_total - metadata.last_synced_message_index, 0),
            "metadata": metadata.model_dump(mode="json"),
            "cloud": cloud.model_dump(mode="json"),
            "boundaries": len(self.linker.boundaries(conversation_id)),
            "blob_store": self.blob_store.name,
        }

    def _audit(self, event_type: str, detail: str, metadata: Optional[dict] = None) -> None:
        audit_event(self.home, event_type, detail, metadata)


def _format_stats(stats: Optional[CompressionStats]) -> str:
    if stats is None:
        return "no payload"
    return (
        f"{stats.original_size} -> {stats.compressed_size} bytes "
        f"(ratio {stats.ratio:.3f})"
    )
