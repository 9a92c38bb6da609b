"""Allow ``python -m notiflow``."""

from notiflow.cli.main import main

main()
