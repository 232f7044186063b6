"""
Main application entry point - WebSocket interface with graceful shutdown handling.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from typing import Any

from chatsync.chat import ChatOrchestrator, StreamingHandler, ToolExecutor
from chatsync.chat.logging_utils import set_module_features
from chatsync.chat.models import McpServerConfig
from chatsync.clients import LLMClient, MCPClient
from chatsync.config import Configuration
from chatsync.history import ChatStore, MergeEngine, ReplicaStore, VersionClock, create_store
from chatsync.tool_schema_manager import ToolSchemaManager
from chatsync.websocket_server import run_websocket_server

LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Module name in the logging config -> logger trees it controls
MODULE_LOGGERS = {
    "chat": ["chatsync.chat", "chatsync.tool_schema_manager", "chatsync.websocket_server"],
    "mcp": ["mcp", "chatsync.clients"],
    "sync": ["chatsync.history"],
}


def configure_logging(logging_config: dict[str, Any]) -> None:
    """
    Apply the logging section: global level, per-module levels on parent
    loggers (children inherit) and feature flags for should_log_feature.
    """
    global_level = logging_config.get("level", "WARNING")
    logging.getLogger().setLevel(LEVEL_MAP.get(global_level, logging.WARNING))

    if "format" in logging_config:
        for handler in logging.getLogger().handlers:
            if isinstance(handler, logging.StreamHandler):
                handler.setFormatter(logging.Formatter(logging_config["format"]))

    for module_name, module_config in (logging_config.get("modules") or {}).items():
        if not isinstance(module_config, dict):
            continue

        level_value = LEVEL_MAP.get(module_config.get("level", global_level), logging.WARNING)
        for logger_name in MODULE_LOGGERS.get(module_name, []):
            logging.getLogger(logger_name).setLevel(level_value)

        set_module_features(module_name, module_config.get("enable_features") or {})


def build_orchestrator(
    config: Configuration,
    store: ReplicaStore,
    llm_client: LLMClient,
    mcp_client: MCPClient,
) -> tuple[ChatOrchestrator, MergeEngine]:
    """Wire one session's chat stack. ChatStore and MergeEngine share a lock."""
    storage = config.get_storage_config()
    retention = config.get_sync_config()["deleted_ids_retention"]
    logging_config = config.get_logging_config()

    lock = asyncio.Lock()
    chat_store = ChatStore(store, storage["session_id"], VersionClock(), lock, retention)
    merge_engine = MergeEngine(store, lock, retention)

    servers = [McpServerConfig.model_validate(s) for s in config.get_mcp_servers()]
    tool_mgr = ToolSchemaManager(mcp_client, servers)
    tool_executor = ToolExecutor(
        mcp_client,
        config.get_tool_call_timeout(),
        logging_config.get("tool_arguments_truncate", 500),
    )
    streaming_handler = StreamingHandler(
        llm_client,
        tool_executor,
        tool_mgr,
        chat_store,
        config.get_max_tool_rounds(),
        logging_config.get("llm_reply_truncate", 500),
    )
    orchestrator = ChatOrchestrator(chat_store, streaming_handler, config.get_session_config())
    return orchestrator, merge_engine


# Configure logging for the application
logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")


async def main() -> None:
    """Main entry point - WebSocket interface with graceful shutdown handling."""
    config = Configuration()
    configure_logging(config.get_logging_config())

    store = create_store(config.get_storage_config())
    mcp_client = MCPClient(config.get_mcp_config())

    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        logging.info("Received shutdown signal, initiating graceful shutdown...")
        shutdown_event.set()

    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)

    async with LLMClient(config) as llm_client:
        orchestrator, merge_engine = build_orchestrator(config, store, llm_client, mcp_client)
        try:
            server_task = asyncio.create_task(
                run_websocket_server(orchestrator, merge_engine, config.get_websocket_config())
            )

            # Wait for either server completion or shutdown signal
            done, pending = await asyncio.wait(
                [server_task, asyncio.create_task(shutdown_event.wait())],
                return_when=asyncio.FIRST_COMPLETED,
            )

            for task in pending:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

            for task in done:
                if task == server_task:
                    exception = task.exception()
                    if exception is not None:
                        raise exception

        except KeyboardInterrupt:
            logging.info("Keyboard interrupt received, shutting down...")
        finally:
            orchestrator.stop()
            await mcp_client.close()
            logging.info("Application shutdown complete")


def cli_main() -> None:
    """Synchronous CLI entrypoint that runs the async main."""
    asyncio.run(main())


if __name__ == "__main__":
    cli_main()
