#!/usr/bin/env python3
"""
Takaflow Entry Point

Starts the FastAPI server with the transfer core.
"""

import sys

from takaflow.api import run_server
from takaflow.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Takaflow transfer core...")
    print(f"Storage backend: {config.storage_type}")
    print(f"API available at: http://localhost:{config.api_port}")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down Takaflow...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
