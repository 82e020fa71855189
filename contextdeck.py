"""Main entry point for contextdeck."""
import logging
import sys

from cli import run_cli

def main():
    """Main entry point."""
    try:
        sys.exit(run_cli())
    except KeyboardInterrupt:
        # Handle Ctrl+C gracefully
        sys.exit(130)
    except Exception:
        logging.exception("Unhandled error in contextdeck")
        sys.exit(1)

if __name__ == "__main__":
    main()
