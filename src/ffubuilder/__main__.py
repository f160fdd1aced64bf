"""Allow ``python -m ffubuilder``."""

from ffubuilder.cli import main

main()
