"""Run the tally pipeline with its HTTP API.

Usage:
    TALLY_CANDIDATES=A,B,C DATABASE_URL=postgresql://... python -m tallyflow
"""

import uvicorn
from dotenv import load_dotenv

from tallyflow.bootstrap.logging import configure_structlog
from tallyflow.bootstrap.pipeline import create_pipeline_app
from tallyflow.config import PipelineConfig


def main() -> None:
    load_dotenv()
    config = PipelineConfig.from_environment()
    configure_structlog(config.environment)
    uvicorn.run(
        create_pipeline_app(config),
        host=config.api.host,
        port=config.api.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
