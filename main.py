# wslink - Main Entry Point
# Keeps a persistent WebSocket link open and logs what arrives on it

"""
wslink Runner

Wires configuration, logging and the connection manager together:
config/secrets.env + config/config.yaml -> ConnectionManager -> log output

- Connects with the configured token and reconnects forever
- Logs every inbound frame
- Reports connection statistics periodically
- Stops cleanly on SIGINT/SIGTERM
"""

import asyncio
import signal
import os
from pathlib import Path
from dotenv import load_dotenv
from datetime import datetime
import yaml

from wslink.connection.connection_manager import get_connection_manager
from wslink.utils.logger import setup_logger

# Global flag for shutdown
shutdown_event = asyncio.Event()

DEFAULT_CONFIG = {
    'websocket': {
        'url': "wss://localhost:8443/ws",
        'heartbeat_interval': 50,
        'reconnect_interval': 5
    },
    'logging': {
        'level': 'INFO',
        'file': 'logs/wslink.log'
    },
    'runner': {
        'stats_interval': 300,
        'preview_chars': 200
    }
}

class WSLinkApp:
    """
    Runner application - owns the process-wide connection manager
    """

    def __init__(self, config: dict):
        self.config = config
        logging_config = config.get('logging', {})
        self.logger = setup_logger(
            "WSLink",
            logging_config.get('level', 'INFO'),
            logging_config.get('file')
        )

        websocket_config = config.get('websocket', {})
        runner_config = config.get('runner', {})
        self.stats_interval = runner_config.get('stats_interval', 300)
        self.preview_chars = runner_config.get('preview_chars', 200)

        self.connection_manager = get_connection_manager(
            websocket_config['url'],
            config['auth']['token'],
            self.on_message,
            heartbeat_interval=websocket_config.get('heartbeat_interval', 50),
            reconnect_interval=websocket_config.get('reconnect_interval', 5)
        )

        self.start_time = datetime.now()
        self.messages_seen = 0

    def on_message(self, raw_message):
        """Log one inbound frame"""
        self.messages_seen += 1
        preview = raw_message[:self.preview_chars]
        self.logger.info(f"📨 #{self.messages_seen}: {preview!r}")

    async def stats_reporter(self):
        """Background task: report connection statistics"""
        while not shutdown_event.is_set():
            await asyncio.sleep(self.stats_interval)

            uptime = int((datetime.now() - self.start_time).total_seconds())
            stats = self.connection_manager.get_stats()
            self.logger.info("📊 Statistics Report:")
            self.logger.info(f"   Uptime: {uptime}s, state: {stats['state']}")
            self.logger.info(f"   Connect attempts: {stats['connect_attempts']} (last at {stats['last_connect_time']})")
            self.logger.info(f"   Messages: {stats['messages_received']} received, {stats['handler_errors']} handler errors")
            self.logger.info(f"   Pings: {stats['pings_sent']} sent, {stats['ping_failures']} failed")

    async def run(self):
        """Run until a shutdown signal arrives"""
        self.logger.info("=" * 60)
        self.logger.info("🚀 wslink - Starting")
        self.logger.info("=" * 60)

        self.connection_manager.start()
        reporter = asyncio.create_task(self.stats_reporter())

        self.logger.info("Press Ctrl+C to stop")
        await shutdown_event.wait()

        self.logger.info("Shutting down...")
        reporter.cancel()
        await asyncio.gather(reporter, return_exceptions=True)
        await self.connection_manager.stop()

        self.logger.info("✅ Shutdown complete")

def validate_config(config: dict) -> tuple[bool, list[str]]:
    """
    Validate configuration structure

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    errors = []

    url = config.get('websocket', {}).get('url', '')
    if not url:
        errors.append("Config error: websocket.url is required")
    elif not url.startswith(('ws://', 'wss://')):
        errors.append("Config error: websocket.url must start with ws:// or wss://")

    if not config.get('auth', {}).get('token'):
        errors.append("Config error: WSLINK_TOKEN is not set")

    numeric_checks = [
        ('websocket.heartbeat_interval', config.get('websocket', {}).get('heartbeat_interval')),
        ('websocket.reconnect_interval', config.get('websocket', {}).get('reconnect_interval')),
        ('runner.stats_interval', config.get('runner', {}).get('stats_interval')),
    ]

    for key, value in numeric_checks:
        if value is not None and (not isinstance(value, (int, float)) or value <= 0):
            errors.append(f"Config error: {key} must be a positive number")

    return (len(errors) == 0, errors)

def load_config(project_root: Path = None) -> dict:
    """
    Load configuration from files

    config/config.yaml provides the settings (built-in defaults when missing),
    config/secrets.env provides WSLINK_TOKEN and an optional WSLINK_URL override.
    """
    project_root = project_root or Path(__file__).parent
    load_dotenv(project_root / "config" / "secrets.env")

    config_path = project_root / "config" / "config.yaml"
    if config_path.exists():
        with open(config_path) as f:
            loaded = yaml.safe_load(f) or {}
    else:
        loaded = {}

    config = {}
    for section, defaults in DEFAULT_CONFIG.items():
        config[section] = {**defaults, **(loaded.get(section) or {})}

    if os.getenv('WSLINK_URL'):
        config['websocket']['url'] = os.getenv('WSLINK_URL')

    config['auth'] = {
        'token': os.getenv('WSLINK_TOKEN', '')
    }

    return config

def handle_shutdown(signum=None, frame=None):
    """Handle shutdown signals"""
    print("\n🛑 Received shutdown signal")
    shutdown_event.set()

def install_signal_handlers(loop: asyncio.AbstractEventLoop):
    """
    Route SIGINT/SIGTERM to handle_shutdown through the event loop

    Loop-level handlers wake the loop at once, so shutdown does not wait
    for the next timer or frame. Falls back to signal.signal where the
    loop does not support them.
    """
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, handle_shutdown, sig)
        except NotImplementedError:
            signal.signal(sig, handle_shutdown)

async def main():
    """Main entry point"""
    logger = setup_logger("Main", "INFO")
    install_signal_handlers(asyncio.get_running_loop())

    try:
        logger.info("Loading configuration...")
        config = load_config()

        is_valid, errors = validate_config(config)
        if not is_valid:
            logger.error("❌ Configuration validation failed:")
            for error in errors:
                logger.error(f"  - {error}")
            logger.info("Set WSLINK_TOKEN in config/secrets.env")
            return

        app = WSLinkApp(config)
        await app.run()

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        raise

def cli():
    """Console entry point"""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n👋 Goodbye!")

if __name__ == "__main__":
    cli()
