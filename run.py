#!/usr/bin/env python3
"""
Bank Accounts Service Entry Point

Starts the FastAPI server with the configured storage backend.
"""

import sys

from bank_accounts.api import run_server
from bank_accounts.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("🏦 Starting Bank Accounts Service...")
    print(f"💾 Storage backend: {config.storage_backend}")
    print(f"🌐 API available at: http://localhost:{config.api_port}")
    print(f"📚 Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\n👋 Shutting down Bank Accounts Service...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)
