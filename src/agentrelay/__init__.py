"""Durable orchestration of coding-agent runs against GitHub repositories."""
