#!/usr/bin/env python3
"""
Launcher script for the companion turn service.

    python run_companion.py

Settings come from the environment (or a .env file); see companion/config.
"""

import sys


def main():
    """Start the companion server"""
    try:
        import uvicorn
        from companion.config import get_app_config
    except ImportError as e:
        print(f"❌ Error: Failed to import required modules: {e}")
        print("\nMake sure the package is installed:")
        print("  pip install -e .")
        sys.exit(1)

    server = get_app_config().get_server_config()
    print("=" * 60)
    print("🚀 Starting Companion Turn Service")
    print("=" * 60)
    print(f"Host: {server['host']}")
    print(f"Port: {server['port']}")
    print("=" * 60)

    uvicorn.run(
        "companion.main:app",
        host=server["host"],
        port=server["port"],
        log_level=server["log_level"].lower(),
    )


if __name__ == "__main__":
    main()
