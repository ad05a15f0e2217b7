"""CodeMentor session core.

Session persistence, cross-tab broadcast, engagement scoring and the
quiz/practice/poll activity sequencer behind the tutoring dashboard.
"""
