"""Subscription convert server: cached node data rendered through remote templates."""

NAME = "Subscribe Convert"
__version__ = "1.0.0"
