"""Agent core: conversation engine, tool pipeline, permissions, hooks,
compaction and sub-agent delegation.
"""
