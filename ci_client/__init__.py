"""
CI Client module.

Command line front-end that loads a workflow, dispatches an event against
it and prints the pipeline report.
"""
