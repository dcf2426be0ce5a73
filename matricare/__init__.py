"""Maternal risk assessment and offline sync engine.

This package contains the on-device assessment pipeline (features, inference,
classification), the durable local record store and the sync machinery that
replicates records to the remote document store.
"""
