"""Status package: enums and exceptions for handling application state and errors.

This package defines:
    - Status: a StrEnum of possible application states
    - STATUS_MESSAGE: default user-facing messages per status
    - BaseStatusException: base exception for status-driven error handling
    - SyncStatus and FailureKind: the sync indicator values and the error taxonomy
    - classify_error: maps remote failures onto FailureKind
"""
