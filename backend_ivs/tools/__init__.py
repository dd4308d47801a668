"""Operator tools: the ivs_cli console."""
