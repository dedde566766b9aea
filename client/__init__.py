# =============================================================================
# VLM Inference Engine - Client Package
# =============================================================================
# HTTP client for the inference server: sends image files and prompts, and
# returns generated text (whole or streamed token by token).
# =============================================================================
