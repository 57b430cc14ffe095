"""Registration completion app for the care portal backend.

This package holds the task store, provisioning handlers, fault
isolation, status aggregation, reconciliation and the HTTP/WebSocket
surfaces that complete a subject's registration after payment.
"""
