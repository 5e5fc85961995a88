"""Entry point for running tripmail as a module.

Usage:
    python -m tripmail validate-config
    python -m tripmail --help
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before any other imports that need env vars

from tripmail.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
