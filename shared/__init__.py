# =============================================================================
# VLM Inference Engine - Shared Package
# =============================================================================
# Data contracts used by both the HTTP client and the server.
# =============================================================================
