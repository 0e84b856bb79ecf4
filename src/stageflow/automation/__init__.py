"""Automation rule engine.

Evaluates trigger/condition/action rules against opportunity events, runs
actions, defers delayed actions to the scheduler and hands external side
effects to a dispatcher.
"""
