"""Agent Engine — HTTP surface (FastAPI)."""
