"""Pipeline core package.

Contains the statistics and PII analyzers, explainability, shared utilities,
schemas, errors, logging and configuration.
"""
