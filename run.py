#!/usr/bin/env python3
"""
ITSM Approval Engine Entry Point

Starts the FastAPI server with the approval engine. Host, port, storage and
logging come from APPROVALS_* environment variables.
"""

import sys

from itsm_approvals.api import run_server
from itsm_approvals.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting ITSM Approval Engine...")
    print(f"Storage backend: {config.storage_backend}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug="--reload" in sys.argv)
    except KeyboardInterrupt:
        print("\nShutting down ITSM Approval Engine...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
