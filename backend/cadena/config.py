"""Application configuration."""

import os
from pathlib import Path
from dotenv import load_dotenv

# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent

# Load .env from backend root (before any os.getenv calls)
load_dotenv(BASE_DIR / ".env")

# Debug trace mode: set CADENA_TRACE=1 to get detailed engine logs
TRACE_ENABLED = os.getenv("CADENA_TRACE", "").strip().lower() in ("1", "true", "yes")

# Return legitimacy policy for the chain builder.
#   allow             a direct back-and-forth between two RFCs is accepted as RETURN
#   reject_ping_pong  such a return is rejected and the document ends up as BREAK
RETURN_POLICY = os.getenv("CADENA_RETURN_POLICY", "allow").strip().lower()

# In-memory analysis sessions held by the HTTP layer
SESSION_TTL_SECONDS = int(os.getenv("CADENA_SESSION_TTL_SECONDS", str(6 * 60 * 60)))  # 6 hours
MAX_SESSIONS = int(os.getenv("CADENA_MAX_SESSIONS", "200"))

# HTTP server bind address for `python -m cadena.main`
API_HOST = os.getenv("CADENA_API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("CADENA_API_PORT", "8000"))

# Invoice-name vs certificate-name similarity below this is an inconsistency
NAME_SIMILARITY_THRESHOLD = float(os.getenv("CADENA_NAME_SIMILARITY_THRESHOLD", "0.7"))

# Document types
DOCUMENT_TYPES = [
    "invoice",               # Factura de origen (NUEVO) o de venta
    "reinvoice",             # Refactura
    "endorsement",           # Endoso
    "vehicle_certificate",   # Tarjeta de circulación
    "vehicle_cancellation",  # Baja vehicular
    "verification",          # Verificación vehicular
]

# Kinds that move ownership from one RFC to another
TRANSFER_DOCUMENT_TYPES = ("invoice", "reinvoice", "endorsement")

# Severity ordering used for ranking findings
SEVERITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3}

# Spanish labels used in certificate-level findings
SEVERITY_LABELS = {
    "critical": "CRITICA",
    "high": "ALTA",
    "medium": "MEDIA",
    "low": "BAJA",
}

# Overall risk levels for the executive summary
RISK_LEVELS = {
    "low": {"color": "#1A7A3A", "label": "Riesgo bajo"},
    "medium": {"color": "#C27A00", "label": "Riesgo medio"},
    "high": {"color": "#BF4A00", "label": "Riesgo alto"},
    "critical": {"color": "#BF1C2E", "label": "Riesgo crítico"},
}
