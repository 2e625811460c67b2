"""
Job drivers: the scene sequencer state machine and its two completion
paths (status poller and webhook receiver)
"""
