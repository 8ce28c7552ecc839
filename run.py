#!/usr/bin/env python3
"""
Ledger Service Entry Point

Starts the FastAPI server with host and port taken from LEDGER_* settings.
"""

import sys

from ledger_service.api import run_server


if __name__ == "__main__":
    print("Starting Ledger Service...")
    print("All balances use Decimal precision")
    print("Documentation at /docs")

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down Ledger Service...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
