"""Moderation-gated chat front end.

Each user message is classified by a content-safety service before it may
reach the language model; the per-session transcript is bounded and kept in
a byte-oriented session store.
"""
