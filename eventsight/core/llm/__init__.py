"""LLM client, prompt templates and output streaming."""
