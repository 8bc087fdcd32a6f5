"""Intent-routed question answering over ingested user profiles."""
