"""Proposer conveniences: base class, function wrapper, LLM-backed proposer."""

from cfmom.proposers.base import FunctionProposer, ProposerBase, as_proposer

__all__ = ["FunctionProposer", "ProposerBase", "as_proposer"]
