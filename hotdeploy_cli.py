"""Thin launcher for the hotdeploy client CLI."""
import sys
import os

HOTDEPLOY_DIR = os.environ.get("HOTDEPLOY_DIR", os.path.dirname(os.path.abspath(__file__)))
if HOTDEPLOY_DIR not in sys.path:
    sys.path.insert(0, HOTDEPLOY_DIR)

from client.cli import main


def run():
    sys.exit(main())


if __name__ == "__main__":
    run()
