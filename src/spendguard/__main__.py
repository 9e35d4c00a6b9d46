"""Entry point for running the service as module: python -m spendguard"""

# Load .env file before importing anything else
from dotenv import load_dotenv
load_dotenv()

from spendguard.main import main

if __name__ == "__main__":
    main()
