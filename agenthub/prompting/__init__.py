"""Prompting package.

This package contains deterministic prompt-construction helpers used by the
generation dispatcher: persona/context message assembly (`prompt_builder`) and the
specialized agent task templates (`tasks`). It performs no model invocation.
"""
