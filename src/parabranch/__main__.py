"""Allow ``python -m parabranch``."""

from parabranch.cli import main

if __name__ == "__main__":
    main()
