"""Service composition: process supervisor, watcher job, notifier and bot."""

from __future__ import annotations

import asyncio

import structlog

from .access import AccessClient, RequestFilter, RequestState
from .background import BackgroundRunner
from .bot import MessagingBot
from .bots import DiscordBot, SlackBot
from .config import Config
from .job import Process
from .messages import proxy_url
from .notifier import AccessRequestNotifier
from .slack_client import SlackClient
from .watcher import DEFAULT_INIT_TIMEOUT, WatcherJob


def build_bot(
    config: Config,
    *,
    cluster_name: str,
    web_proxy_url: str | None = None,
    runner: BackgroundRunner | None = None,
) -> MessagingBot:
    """Instantiate the bot for whichever chat platform the configuration names."""

    platform = config.platform_config
    if config.platform == "slack":
        client = SlackClient(token=platform.token, base_url=platform.api_url or None)
        return SlackBot(
            client,
            runner or BackgroundRunner(),
            cluster_name=cluster_name,
            web_proxy_url=web_proxy_url,
        )
    return DiscordBot(
        token=platform.token,
        api_url=platform.api_url or None,
        cluster_name=cluster_name,
        web_proxy_url=web_proxy_url,
    )


class NotifierService:
    """Run the access request notification plugin until shut down.

    ``run()`` pings the access API, checks its version and the bot, then
    supervises the watcher job. A watcher failure terminates the process and is
    re-raised from ``run()``.
    """

    def __init__(
        self,
        config: Config,
        client: AccessClient,
        bot: MessagingBot | None = None,
        *,
        runner: BackgroundRunner | None = None,
        init_timeout: float = DEFAULT_INIT_TIMEOUT,
    ) -> None:
        self.config = config
        self._client = client
        self._bot = bot
        self._runner = runner or BackgroundRunner()
        self._owns_runner = runner is None
        self.init_timeout = init_timeout
        self.process = Process()
        self.cluster_name = ""
        self._watcher_job: WatcherJob | None = None
        self._started = asyncio.Event()

    @property
    def bot(self) -> MessagingBot | None:
        return self._bot

    @property
    def ready(self) -> bool:
        return self._watcher_job is not None and self._watcher_job.is_ready()

    async def wait_ready(self) -> bool:
        """Wait until the watcher reports readiness for the first time, or fails to start."""

        await self._started.wait()
        if self._watcher_job is None:
            return False
        return await self._watcher_job.wait_ready()

    async def run(self) -> None:
        log = structlog.get_logger().bind(platform=self.config.platform)
        try:
            try:
                job = await self._start()
            finally:
                self._started.set()

            if job is None:
                log.info("plugin_stopped")
                return

            if await job.wait_ready():
                log.info("plugin_ready", cluster=self.cluster_name)

            await self.process.wait()
            error = job.err()
            if error is not None:
                raise error
            log.info("plugin_stopped")
        finally:
            await self._close()

    async def _start(self) -> WatcherJob | None:
        log = structlog.get_logger().bind(platform=self.config.platform)
        pong = await self._client.ping()
        self.cluster_name = pong.cluster_name
        log.debug("access_api_connected", cluster=pong.cluster_name, server_version=pong.server_version)
        pong.assert_server_version()

        if self._bot is None:
            self._bot = build_bot(
                self.config,
                cluster_name=pong.cluster_name,
                web_proxy_url=proxy_url(pong.proxy_public_addr),
                runner=self._runner,
            )
        await self._bot.check_health()
        if self.process.terminated:
            return None

        notifier = AccessRequestNotifier(
            self._client,
            self._bot,
            self.config.recipients,
            cluster_name=pong.cluster_name,
        )
        job = WatcherJob(
            self._client,
            RequestFilter(state=RequestState.PENDING),
            notifier.on_watcher_event,
            init_timeout=self.init_timeout,
        )
        self._watcher_job = job
        self.process.spawn_critical_job(job)
        return job

    async def shutdown(self, timeout: float | None = None) -> None:
        await self.process.shutdown(timeout)

    async def _close(self) -> None:
        if self._bot is not None:
            try:
                await self._bot.aclose()
            except Exception as exc:
                structlog.get_logger().error("bot_close_failed", error=str(exc))
        if self._owns_runner:
            self._runner.shutdown(wait=False)
