"""Allow ``python -m maestro``."""

from maestro.cli import main

main()
