"""Allow `python -m mneme` (used to spawn the background loop)."""

from mneme.cli import main

if __name__ == "__main__":
    main()
