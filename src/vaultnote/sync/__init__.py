"""
Sync layer — keeps the local store and a remote Git repository in step.

    remote      REST + Git Data API client with retry and conflict detection
    codec       item <-> portable text, with optional body encryption
    engine      the download-then-upload sync pass
    encryption  cross-device encryption negotiation and password changes
    scheduler   periodic and on-demand triggers
"""
