"""Main entry point - orchestrates all components."""

import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import uvicorn
import yaml

from .backend import ClaudeCodeBackend
from .errors import ConfigError
from .reply_token_store import ReplyTokenStore
from .router import CommandRouter
from .server import create_app
from .session_registry import SessionRegistry
from .telegram_bot import TelegramChannel

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"
CONFIG_ENV_VAR = "CLAUDE_RELAY_CONFIG"


def load_config(config_path: Optional[str] = None) -> dict:
    """Load configuration from YAML file."""
    path = Path(config_path or os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH).expanduser()

    if not path.exists():
        logger.warning(f"Config file not found: {path}, using defaults")
        return {}

    with open(path) as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid config file {path}: {e}")


class RelayApp:
    """Main application orchestrator."""

    def __init__(self, config: dict):
        """
        Raises:
            ConfigError: if no chat channel can be configured
        """
        self.config = config

        # Server config
        self.host = config.get("server", {}).get("host", "127.0.0.1")
        self.port = config.get("server", {}).get("port", 8421)

        # Paths
        paths = config.get("paths", {})
        self.reply_token_db = paths.get("reply_token_db", "~/.local/share/claude-relay/reply_tokens.db")

        registry_config = config.get("registry", {})
        self.cleanup_interval = registry_config.get("cleanup_interval_seconds", 3600)

        # Initialize components
        self.registry = SessionRegistry.from_config(config)
        self.reply_tokens = ReplyTokenStore(
            db_path=self.reply_token_db,
            ttl_seconds=registry_config.get("token_ttl_seconds", 86400),
        )
        self.backend = ClaudeCodeBackend(config=config)
        self.channel = TelegramChannel.from_config(config, self.registry, self.reply_tokens)
        self.router = CommandRouter(
            channel=self.channel,
            backend=self.backend,
            registry=self.registry,
            reply_tokens=self.reply_tokens,
        )
        self.app = create_app(
            registry=self.registry,
            router=self.router,
            backend=self.backend,
            config=config,
        )

        self.server: Optional[uvicorn.Server] = None
        self._cleanup_task: Optional[asyncio.Task] = None

    async def run_cleanup(self) -> dict:
        """One cleanup pass over tokens, sessions and reply mappings."""
        tokens = self.registry.cleanup_expired_tokens()
        sessions = self.registry.cleanup_expired_sessions()
        dead = await self.registry.cleanup_dead_sessions()
        replies = self.reply_tokens.cleanup()
        if tokens or sessions or dead or replies:
            logger.info(
                f"Cleanup: {tokens} tokens, {sessions} expired sessions, "
                f"{dead} dead sessions, {replies} reply mappings"
            )
        return {"tokens": tokens, "sessions": sessions, "dead_sessions": dead, "reply_tokens": replies}

    async def _cleanup_loop(self):
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                await self.run_cleanup()
            except Exception as e:
                logger.error(f"Cleanup failed: {e}")

    async def start(self):
        """Start all components."""
        logger.info("Starting Claude Remote Relay...")

        await self.channel.start()
        logger.info("Telegram channel started")

        self._cleanup_task = asyncio.create_task(self._cleanup_loop())

        # Start the web server
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting server on http://{self.host}:{self.port}")

        # Run until shutdown
        await self.server.serve()

    def request_shutdown(self):
        if self.server:
            self.server.should_exit = True

    async def stop(self):
        """Stop all components, in reverse start order."""
        logger.info("Stopping Claude Remote Relay...")

        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        try:
            await self.channel.stop()
        except Exception as e:
            logger.error(f"Error stopping Telegram channel: {e}")

        self.reply_tokens.close()
        logger.info("Shutdown complete")


def setup_signal_handlers(app: RelayApp):
    """Set up signal handlers for graceful shutdown."""
    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}, shutting down...")
        app.request_shutdown()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


async def main():
    """Main entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    config = load_config()

    app = RelayApp(config)
    setup_signal_handlers(app)

    try:
        await app.start()
    finally:
        await app.stop()


def run():
    """Entry point for console script."""
    try:
        asyncio.run(main())
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
