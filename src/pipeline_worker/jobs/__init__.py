"""Pipeline job queue: repository, reaper, dispatcher, retry policy and poll loop.

The queue is a plain table shared by every worker process. Workers never
talk to each other: the atomic claim and the status compare-and-swap writes
in ``repository.py`` are the only coordination between them.
"""
