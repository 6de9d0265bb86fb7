"""Downstream actions invoked for confirmed new accounts."""

from .base import ReactionActionBase, DownstreamActionFailure, ActionLoadError, load_action

__all__ = ['ReactionActionBase', 'DownstreamActionFailure', 'ActionLoadError', 'load_action']
