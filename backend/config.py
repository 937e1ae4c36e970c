"""Configuration settings for the quiz backend"""

import os
from dotenv import load_dotenv

load_dotenv()

# LLM
# Without a key the language model is treated as absent and the fallback generator is used.
GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY", "").strip()
GEMINI_MODEL = (os.getenv("GEMINI_MODEL") or "gemini-1.5-flash").strip()
MAX_TOP_K = int(os.getenv("MAX_TOP_K", "8"))

# Storage
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./manifestest.db")

# Generation
MAX_PAGE_CHARS = int(os.getenv("MAX_PAGE_CHARS", "200000"))
GENERATION_MAX_ATTEMPTS = int(os.getenv("GENERATION_MAX_ATTEMPTS", "3"))
GENERATION_RETRY_DELAY = float(os.getenv("GENERATION_RETRY_DELAY", "0.5"))  # seconds

# Question count slider bounds
MIN_QUESTIONS = int(os.getenv("MIN_QUESTIONS", "3"))
MAX_QUESTIONS = int(os.getenv("MAX_QUESTIONS", "30"))
DEFAULT_QUESTIONS = int(os.getenv("DEFAULT_QUESTIONS", "10"))

# Scraper
SCRAPE_TIMEOUT = int(os.getenv("SCRAPE_TIMEOUT", "20"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
