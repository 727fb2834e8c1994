"""
ChoreMinder — Entry Point.

Single entry point: `python main.py` starts the Telegram host with the
notification sweep and the daily instance generation.
"""

import logging

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

from choreminder.bot.telegram_bot import main

if __name__ == "__main__":
    main()
