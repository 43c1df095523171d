"""
Notification Dispatcher

Delivers a NotificationJob on each of its requested channels through an
explicit channel -> transport table. Channels are attempted concurrently and
independently; a failing channel never prevents the others from being tried.
Each channel gets a bounded number of attempts and then is recorded as
failed. Results are written back to the job store, where staff views pick up
failed channels.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Set

from ...core.clock import Clock
from ...core.logging import get_structured_logger
from ...models.account import Account
from ...models.notification import ChannelOutcome, ChannelResult, NotificationChannel, NotificationJob
from ..accounts import AccountDirectory
from ..safety.exceptions import DispatchPartialFailure
from .job_store import NotificationJobStore
from .transports import ChannelTransport


class NotificationDispatcher:
    """Fire-and-forget multi-channel delivery"""

    def __init__(self, accounts: AccountDirectory, job_store: NotificationJobStore, clock: Clock,
                 max_attempts: int = 3, retry_delay_seconds: float = 2.0):
        self.logger = logging.getLogger(__name__)
        self.events = get_structured_logger("notifications.dispatcher")
        self.accounts = accounts
        self.job_store = job_store
        self.clock = clock
        self.max_attempts = max_attempts
        self.retry_delay_seconds = retry_delay_seconds

        self.transports: Dict[NotificationChannel, ChannelTransport] = {}
        self._pending: Set[asyncio.Task] = set()

        # Statistics
        self.jobs_dispatched = 0
        self.channel_failures = 0
        self.dispatch_errors = 0

    def register_transport(self, transport: ChannelTransport):
        self.transports[transport.channel] = transport
        self.logger.info(f"Registered {transport.channel.value} transport")

    def enqueue(self, job: NotificationJob) -> NotificationJob:
        """
        Persist a job and schedule its delivery without waiting for it.

        Must be called from a running event loop.
        """
        self.job_store.save(job)
        task = asyncio.create_task(self._run(job))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return job

    async def _run(self, job: NotificationJob):
        """Background delivery; unexpected errors are logged and recorded as failed channels"""
        try:
            await self.dispatch(job)
        except Exception as e:
            self.dispatch_errors += 1
            self.logger.error(f"Delivery of notification {job.id} to {job.recipient_id} failed: {e}",
                              exc_info=True)
            self.events.error(
                "notification_dispatch_failed",
                job_id=job.id,
                recipient_id=job.recipient_id,
                session_id=job.session_id,
                alert_id=job.alert_id,
                error=str(e)
            )

            now = self.clock.now()
            if not job.channel_results:
                job.channel_results = {
                    channel: ChannelResult(ChannelOutcome.FAILED, now, error=str(e))
                    for channel in dict.fromkeys(job.channels)
                }
            job.completed_at = job.completed_at or now
            try:
                self.job_store.update_results(job)
            except Exception as store_error:
                self.logger.error(f"Could not record failure of notification {job.id}: {store_error}")

    async def dispatch(self, job: NotificationJob) -> Dict[NotificationChannel, ChannelResult]:
        """
        Attempt every requested channel and record its outcome.

        Returns:
            Mapping of channel to its recorded result
        """
        account = self.accounts.get_account(job.recipient_id)
        channels = list(dict.fromkeys(job.channels))

        results = await asyncio.gather(
            *(self._deliver_channel(job, channel, account) for channel in channels)
        )

        job.channel_results = dict(zip(channels, results))
        job.completed_at = self.clock.now()
        self.job_store.update_results(job)
        self.jobs_dispatched += 1

        failure = self.partial_failure(job)
        if failure:
            self.channel_failures += len(failure.failed_channels)
            self.events.warning(
                "notification_partial_failure",
                job_id=job.id,
                recipient_id=job.recipient_id,
                session_id=job.session_id,
                alert_id=job.alert_id,
                failed_channels=failure.failed_channels,
                outcomes=job.outcomes()
            )
        else:
            self.logger.debug(f"Notification {job.id} to {job.recipient_id}: {job.outcomes()}")

        return job.channel_results

    async def _deliver_channel(self, job: NotificationJob, channel: NotificationChannel,
                               account: Optional[Account]) -> ChannelResult:
        transport = self.transports.get(channel)
        if transport is None:
            return ChannelResult(ChannelOutcome.SKIPPED, self.clock.now(), error="no transport configured")

        address = account.address_for(channel) if account and account.active else None
        if not address:
            return ChannelResult(ChannelOutcome.SKIPPED, self.clock.now(), error="recipient unreachable")

        error = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                if await transport.deliver(address, job.payload):
                    return ChannelResult(ChannelOutcome.SENT, self.clock.now(), attempts=attempt)
                error = "rejected by provider"
            except Exception as e:
                error = str(e)
                self.logger.warning(
                    f"{channel.value} delivery of {job.id} failed (attempt {attempt}/{self.max_attempts}): {e}"
                )

            if attempt < self.max_attempts and self.retry_delay_seconds > 0:
                await asyncio.sleep(self.retry_delay_seconds * attempt)

        return ChannelResult(ChannelOutcome.FAILED, self.clock.now(), attempts=self.max_attempts, error=error)

    def partial_failure(self, job: NotificationJob) -> Optional[DispatchPartialFailure]:
        """Describe the failed channels of a job, or None if none failed"""
        failed = job.failed_channels()
        if not failed:
            return None
        return DispatchPartialFailure(job.id, job.recipient_id, [channel.value for channel in failed])

    def failed_deliveries(self, limit: int = 50) -> List[DispatchPartialFailure]:
        """Failed channels across recent jobs, for staff visibility"""
        return [self.partial_failure(job) for job in self.job_store.list_failed(limit)]

    async def drain(self):
        """Wait until every enqueued job has finished delivering"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self):
        await self.drain()
        for transport in self.transports.values():
            await transport.close()

    def get_statistics(self) -> Dict[str, int]:
        return {
            'jobs_dispatched': self.jobs_dispatched,
            'channel_failures': self.channel_failures,
            'dispatch_errors': self.dispatch_errors,
            'pending_jobs': len(self._pending)
        }
