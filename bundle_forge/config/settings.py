import os
from dotenv import load_dotenv

# Load Environment Variables from the working directory .env
load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    return int(raw) if raw.strip() else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    return float(raw) if raw.strip() else default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "")
    if not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    # ═══════════════════════════════════════════════════════════════════
    # BUNDLE FORGE CONFIGURATION (Env-Based)
    # ═══════════════════════════════════════════════════════════════════

    # --- Output ---
    SILENT_MODE = _env_bool("SILENT_MODE", False)
    LOG_DIR = os.getenv("LOG_DIR", os.path.abspath("logs"))

    # --- Endpoints ---
    RPC_URL = os.getenv("HELIUS_RPC_URL") or os.getenv("RPC_URL", "https://api.mainnet-beta.solana.com")
    RPC_WEBSOCKET_ENDPOINT = os.getenv("RPC_WEBSOCKET_ENDPOINT", "")
    BLOCKENGINE_URL = os.getenv("BLOCKENGINE_URL", "https://mainnet.block-engine.jito.wtf/api/v1/bundles")
    BLOCKENGINE_REGION = os.getenv("BLOCKENGINE_REGION", "ny")

    # --- Commitment ---
    # Explicit per call; this is only the default when a caller passes none
    COMMITMENT_LEVEL = os.getenv("COMMITMENT_LEVEL", "confirmed")
    BLOCKHASH_COMMITMENT = os.getenv("BLOCKHASH_COMMITMENT", "finalized")

    # --- Transaction limits ---
    MAX_TX_BYTES = _env_int("MAX_TX_BYTES", 1232)
    MAX_SIGNERS_PER_TX = _env_int("MAX_SIGNERS_PER_TX", (1232 - 3) // 64)
    MAX_OPS_PER_BATCH = _env_int("MAX_OPS_PER_BATCH", 5)

    # --- Confirmation ---
    CONFIRM_TIMEOUT_S = _env_float("CONFIRM_TIMEOUT_S", 30.0)
    CONFIRM_POLL_S = _env_float("CONFIRM_POLL_S", 0.5)
    SKIP_PREFLIGHT = _env_bool("SKIP_PREFLIGHT", False)

    # --- Retry ---
    RETRY_MAX_ATTEMPTS = _env_int("RETRY_MAX_ATTEMPTS", 3)
    RETRY_BASE_DELAY_S = _env_float("RETRY_BASE_DELAY_S", 1.0)

    # --- Jito bundles ---
    JITO_FEE = _env_int("JITO_FEE", 10_000)  # lamports
    MAX_BUNDLE_SIZE = _env_int("MAX_BUNDLE_SIZE", 5)  # tip included
    BUNDLE_TIMEOUT_S = _env_float("BUNDLE_TIMEOUT_S", 30.0)
    BUNDLE_POLL_S = _env_float("BUNDLE_POLL_S", 2.0)
    BUNDLE_ENCODING = os.getenv("BUNDLE_ENCODING", "base64")
    BUNDLE_REJECTION_POLICY = os.getenv("BUNDLE_REJECTION_POLICY", "abort")
    TIP_CACHE_TTL_S = _env_float("TIP_CACHE_TTL_S", 300.0)

    # Relay-published tip accounts (fallback when getTipAccounts is unavailable)
    JITO_TIP_ACCOUNTS = [
        "Cw8CFyM9FkoMi7K7Crf6HNQqf4uEMzpKw6QNghXLvLkY",
        "DttWaMuVvTiduZRnguLF7jNxTgiMBZ1hyAumKUiL2KRL",
        "96gYZGLnJYVFmbjzopPSU6QiEV5fGqZNyN9nmNhvrZU5",
        "3AVi9Tg9Uo68tJfuvoKvqKNWKkC5wPdSSdeBnizKZ6jT",
        "HFqU5x63VTqvQss8hp11i4wVV8bD44PvwucfZ2bU7gRe",
        "ADaUMid9yfUytqMBgopwjb2DTLSokTSzL1zt6iGPaS49",
        "ADuUkR4vqLUMWXxW9gh6D6L8pMSawimctcNZ5pGwDcEt",
        "DfXygSm4jCyNCybVYYK6DwvWqjKee8pbDmJGcLWNDXjh",
    ]

    # --- Address Lookup Tables ---
    LOOKUP_EXTEND_LIMIT = 256  # addresses per extend instruction
    LOOKUP_TABLE_CAPACITY = 256  # addresses per table
    LOOKUP_EXTEND_CHUNK = _env_int("LOOKUP_EXTEND_CHUNK", 20)  # fits one transaction
    TABLE_POLL_RETRIES = _env_int("TABLE_POLL_RETRIES", 10)
    TABLE_POLL_INTERVAL_S = _env_float("TABLE_POLL_INTERVAL_S", 0.5)
    TABLE_CREATION_ATTEMPTS = _env_int("TABLE_CREATION_ATTEMPTS", 2)

    # --- Transfer flows ---
    RENT_RESERVE_LAMPORTS = _env_int("RENT_RESERVE_LAMPORTS", 2_039_280)
    TX_FEE_LAMPORTS = _env_int("TX_FEE_LAMPORTS", 5_000)
