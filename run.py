#!/usr/bin/env python3
"""
Scrooge Bank Entry Point

Starts the FastAPI server with the bank core. Host, port and storage come
from SCROOGE_* environment variables (see scrooge_bank/config.py).
"""

import sys

from scrooge_bank.api import run_server
from scrooge_bank.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Scrooge Bank...")
    print(f"Storage: {config.database_url}")
    print(f"API available at: http://{config.api_host}:{config.api_port}")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down Scrooge Bank...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
