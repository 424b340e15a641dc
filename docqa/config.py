"""Configuration management for the DocQA hybrid retrieval service."""
import os
import logging
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# API Keys
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
HUGGINGFACE_API_KEY = os.getenv("HUGGINGFACE_API_KEY")
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")

# Server Configuration
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"

# Storage backend: "memory" keeps documents for the process lifetime,
# "supabase" persists them in pgvector tables
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "memory")

# CORS Configuration
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:3001"
).split(",")

# Model Configuration
EMBEDDING_MODEL = "sentence-transformers/all-mpnet-base-v2"
ANSWER_MODEL = os.getenv("ANSWER_MODEL", "llama-3.3-70b-versatile")
LLM_TEMPERATURE = 0.3
LLM_MAX_TOKENS = 1000
EMBEDDING_BATCH_SIZE = 16
EMBEDDING_MAX_RETRIES = 5
EMBEDDING_RETRY_DELAY = 5.0  # seconds, doubled per retry
EMBEDDING_TIMEOUT = 120.0  # seconds

# Chunking Configuration
CHUNK_SIZE = 300  # words
CHUNK_OVERLAP = 50  # words
LARGE_DOCUMENT_CHARS = 500_000

# Retrieval Configuration
SEARCH_LIMIT = 10  # candidates requested from each search engine
MAX_RESULTS = 8  # hard cap on fused passages
MIN_SIMILARITY = float(os.getenv("MIN_SIMILARITY", "0.0"))
CONTEXT_SIMILARITY_THRESHOLD = 0.7
CONTEXT_BOOST_WEIGHT = 0.15
LARGE_RESULT_THRESHOLD = 5
MAX_CHUNKS_PER_DOCUMENT = 3

# Conversation Configuration
MAX_HISTORY_MESSAGES = 10  # 5 questions + 5 answers

# Logging Configuration
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
