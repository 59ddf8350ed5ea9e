"""Entry point for chatbridge: start every configured chat service against one completion client."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from typing import TYPE_CHECKING

from chatbridge.config import get_config
from chatbridge.core.errors import ConnectionLostError, CredentialError
from chatbridge.core.events import ChannelKind
from chatbridge.core.logging_config import setup_logging

if TYPE_CHECKING:
    from chatbridge.channels.base import ChannelService
    from chatbridge.config.loader import Config, ServiceSettings
    from chatbridge.models.codex import CompletionClient

logger = logging.getLogger(__name__)


def main() -> None:
    config = get_config(os.getenv("CHATBRIDGE_CONFIG") or None)
    setup_logging(level=config.logging.level, use_json=config.logging.use_json)
    if not config.codex.refresh_token:
        logger.error("CODEX_REFRESH_TOKEN is required")
        sys.exit(1)
    if not config.enabled_services():
        logger.error("no services configured; set SLACK_BOT_TOKEN/SLACK_APP_TOKEN or add services to the config")
        sys.exit(1)
    try:
        exit_code = asyncio.run(run_services(config))
    except KeyboardInterrupt:
        exit_code = 0
    if exit_code:
        sys.exit(exit_code)


def build_service(
    service: "ServiceSettings",
    completion: "CompletionClient",
    config: "Config",
) -> "ChannelService":
    """Instantiate the connector for one service entry. Transport libraries are imported lazily.

    Each connector gets its own ConversationSerializer, so conversation keys of different
    services never queue behind each other.
    """
    conversation = config.conversation
    if service.kind == ChannelKind.SLACK:
        from chatbridge.channels.slack import SlackBot

        return SlackBot(
            service,
            completion,
            max_history=conversation.max_history,
            update_interval=conversation.slack_stream_update_interval,
        )
    if service.kind == ChannelKind.DISCORD:
        from chatbridge.channels.discord import DiscordBot

        return DiscordBot(
            service,
            completion,
            max_history=conversation.max_history,
            update_interval=conversation.discord_stream_update_interval,
        )
    if service.kind == ChannelKind.IRC:
        from chatbridge.channels.irc import IrcBot

        return IrcBot(service, completion, max_history=conversation.max_history)
    raise ValueError(f"unsupported service kind: {service.kind}")


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Not available on this platform / loop
            pass


async def run_services(config: "Config", stop: asyncio.Event | None = None) -> int:
    """Run until a stop signal or a fatal disconnect. Returns the process exit code."""
    from chatbridge.models.codex import CompletionClient
    from chatbridge.models.credentials import CodexCredentials

    codex = config.codex
    try:
        credentials = CodexCredentials(
            codex.refresh_token,
            refresh_endpoint=codex.refresh_endpoint,
            client_id=codex.client_id,
        )
    except CredentialError as e:
        logger.error("credentials unavailable: %s", e)
        return 1
    completion = CompletionClient(
        credentials,
        endpoint=codex.endpoint,
        default_model=codex.model,
        system_prompt=codex.resolve_system_prompt(),
        timeout=codex.request_timeout,
    )
    if stop is None:
        stop = asyncio.Event()
        _install_signal_handlers(stop)

    started: list[ChannelService] = []
    for service in config.enabled_services():
        try:
            bot = build_service(service, completion, config)
            await bot.start()
        except Exception as e:
            logger.error(
                "service failed to start: %s",
                e,
                extra={"service": service.name, "kind": service.kind.value},
            )
            continue
        started.append(bot)

    exit_code = 0
    try:
        if not started:
            logger.error("no service started")
            return 1
        runners = {asyncio.create_task(bot.run(), name=f"service:{bot.name}"): bot for bot in started}
        stop_waiter = asyncio.create_task(stop.wait())
        pending = set(runners)
        while pending and not stop.is_set():
            done, pending = await asyncio.wait(pending | {stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
            pending.discard(stop_waiter)
            for task in done:
                if task is stop_waiter:
                    continue
                bot = runners[task]
                error = task.exception() if not task.cancelled() else None
                if isinstance(error, ConnectionLostError):
                    logger.error("service connection lost: %s", error, extra={"service": bot.name})
                    exit_code = 1
                    stop.set()
                elif error is not None:
                    logger.error("service stopped with error: %s", error, extra={"service": bot.name})
                else:
                    logger.info("service finished", extra={"service": bot.name})
        stop_waiter.cancel()
        for task in pending:
            task.cancel()
    finally:
        for bot in started:
            try:
                await bot.stop()
            except Exception as e:
                logger.warning("service stop failed: %s", e, extra={"service": bot.name})
        await completion.close()
        await credentials.close()
        logger.info("chatbridge stopped", extra={"exit_code": exit_code})
    return exit_code


if __name__ == "__main__":
    main()
