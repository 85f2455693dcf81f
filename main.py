#!/usr/bin/env python3
"""
Weather Station Hub - Main Entry Point

Usage:
    python main.py --help                 # Show help
    python main.py run                    # Run the hub
    python main.py sensors                # List known sensors
    python main.py log AA:BB:CC:DD:EE:FF  # Show stored readings of a sensor
    python main.py config                 # Validate and show configuration

Environment Setup:
    Copy and configure the environment file:
    cp .env.sample .env
"""

import sys

from weatherhub.cli.menu import cli


def main():
    """Main entry point."""
    try:
        cli()
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
