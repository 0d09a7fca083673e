"""Allow running the radio with python -m aiojellyradio."""

from aiojellyradio.cli import main

raise SystemExit(main())
