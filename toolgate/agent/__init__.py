"""
Action-proposing agent.

Turns a session's context into candidate domain actions and executes the
chosen one, returning a context delta and artifacts.
"""
