# =============================================================================
# VLM Inference Engine - Server Package
# =============================================================================
# This package contains the HTTP layer: a FastAPI application that loads one
# shared model at startup and runs a fresh GenerationSession per request.
# =============================================================================
