"""Integration gateway service entry point."""

from pathlib import Path

import newrelic.agent

from src.utils.config import get_config_value, get_gateway_environment

# Initialize New Relic with the gateway TOML config and environment before the app is imported
config_path = Path(__file__).parent / "newrelic.toml"
newrelic.agent.initialize(str(config_path), environment=get_gateway_environment())

from src.ingest.gatekeeper.app import create_app  # noqa: E402
from src.utils.logging import get_uvicorn_log_config  # noqa: E402

app = create_app()


def main():
    """Run the gateway service."""
    import uvicorn

    port = int(get_config_value("GATEWAY_PORT", 8001))
    uvicorn.run(
        "src.ingest.gatekeeper.main:app",
        host="0.0.0.0",
        port=port,
        log_config=get_uvicorn_log_config(),
    )


if __name__ == "__main__":
    main()
