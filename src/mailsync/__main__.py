"""Entry point for running the sync engine as a module.

Usage:
    python -m mailsync validate-config
    python -m mailsync --help
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before any other imports that need env vars

from mailsync.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
