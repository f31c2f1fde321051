"""Operator engine for template-based stack orchestration.

Renders a template, diffs it against recorded stack state and executes the
resulting change set against a control-plane through resource providers.

Package name uses 'stack_opr' (short for operator) to avoid collision
with Python's stdlib 'operator' module.
"""
