"""Shared configuration, logging, metrics, errors and utilities."""
