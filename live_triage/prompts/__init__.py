"""Prompt templates for the remote classifier and metadata extraction."""
