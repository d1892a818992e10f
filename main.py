import os
from dotenv import load_dotenv
# Load environment variables before any other imports
load_dotenv()

import logging
from db import init_db
from telegram_bot import create_app

# Configure logging
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=os.getenv("LOG_LEVEL", "INFO").upper()
)
# httpx logs every Telegram long-poll request at INFO
logging.getLogger("httpx").setLevel(logging.WARNING)


def main():
    # 1. Initialize DB
    print("Initializing Database...")
    init_db()

    # 2. Create Bot Application (the countdown scheduler starts with it)
    print("Creating Bot Application...")
    application = create_app()

    # 3. Run Bot
    print("Bot is polling...")
    application.run_polling()


if __name__ == "__main__":
    # Ensure env vars are set
    if not os.getenv("TELEGRAM_BOT_TOKEN"):
        print("Error: TELEGRAM_BOT_TOKEN is not set.")
    elif not os.getenv("OPENAI_API_KEY"):
        print("Error: OPENAI_API_KEY is not set.")
    else:
        main()
