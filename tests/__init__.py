"""
Test suite for dshelper.

- Unit tests for expression building, the local server and the client verbs
- Integration tests for get_stats, make_outcome and the command line
"""
