import argparse
import logging
import os
from pathlib import Path

from sandbox_orchestrator.app_container import build_orchestrator
from .config import DEFAULT_CONFIG_DIR, OrchestratorConfig, load_config


def _configure_logging(level: str) -> None:
    level = (level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _print_config(config: OrchestratorConfig) -> None:
    print(f"Config dir: {config.config_dir}")
    print(f"Env file: {config.env_path}")
    print(f"State DB: {config.state_db_path}")
    print(f"E2B API key present: {'yes' if config.e2b_api_key else 'no'}")
    print(f"Sandbox template: {config.sandbox_template}")
    print(f"MCP defaults: port={config.mcp_default_port} timeout={config.mcp_default_timeout_sec}s")
    print(f"Readiness probe: {config.readiness_attempts} x {config.readiness_interval_sec}s")
    print(f"MCP keepalive: every {config.mcp_keepalive_interval_sec}s")
    print(f"Callbacks: {config.callback_base_url or 'local session store'}")
    print(f"Model: {config.openai_model} (key present: {'yes' if config.openai_api_key else 'no'})")
    if config.mcp_catalog_path is not None:
        print(f"MCP catalog: {config.mcp_catalog_path}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Sandbox orchestrator HTTP service")
    parser.add_argument(
        "--config-dir",
        default=str(DEFAULT_CONFIG_DIR),
        help="Directory holding the .env config (default: ~/.config/sandbox-orchestrator)",
    )
    parser.add_argument("--print-config", action="store_true", help="Print active config summary")
    parser.add_argument("--host", default="127.0.0.1", help="Bind host")
    parser.add_argument("--port", type=int, default=8780, help="Bind port")
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", ""))

    args = parser.parse_args()
    config_dir = Path(args.config_dir).expanduser().resolve()
    config = load_config(config_dir)
    log_level = args.log_level or config.log_level

    _configure_logging(log_level)

    if args.print_config:
        _print_config(config)
        return

    from sandbox_orchestrator.api.app import create_app
    import uvicorn

    orchestrator = build_orchestrator(config)
    app = create_app(orchestrator)
    uvicorn.run(app, host=args.host, port=args.port, log_level=log_level.lower())


if __name__ == "__main__":
    main()
