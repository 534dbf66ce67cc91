"""ASCII art banner for the Beacon CLI."""

BANNER = r"""
  ____
 | __ )  ___  __ _  ___ ___  _ __
 |  _ \ / _ \/ _` |/ __/ _ \| '_ \
 | |_) |  __/ (_| | (_| (_) | | | |
 |____/ \___|\__,_|\___\___/|_| |_|
"""

TAGLINE = "Durable, privacy-filtered event pipeline"


def print_banner() -> None:
    """Print the banner and tagline."""
    print(BANNER)
    print(f"  {TAGLINE}")
    print()
