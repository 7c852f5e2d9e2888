#!/usr/bin/env python3
"""
Approval Workflow Engine Entry Point

Configures logging from the environment and starts the FastAPI server
(port 8091 by default) with the SLA sweeper running in the background.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from approval_engine.config import get_config
from approval_engine.logging_config import setup_logging
from approval_engine.api import run_server


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, config.log_format, config.log_file)

    logger.info(f"Starting Approval Workflow Engine on {config.api_host}:{config.api_port}")
    logger.info(f"Storage: {config.database_url}; SLA sweep every {config.sweep_interval_seconds}s")

    try:
        run_server(host=config.api_host, port=config.api_port, debug=False)
    except KeyboardInterrupt:
        logger.info("Shutting down Approval Workflow Engine")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)
