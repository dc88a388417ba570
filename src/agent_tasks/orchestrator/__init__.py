"""Task queue and execution engine for a CLI coding agent.

Why not Celery / Dramatiq / Arq?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The hard part is not queuing, it is supervising one external agent process
per task: feeding it a prompt on stdin, streaming its output, enforcing a
wall-clock timeout, killing its whole process tree on cancel, and deciding
from free-form text whether the work actually got done.

State lives in a handful of JSON documents under one directory so that an
operator can inspect or repair the queue with a text editor. A broker would
add an operational dependency to a single-machine, CLI-first tool while all
of the above would still be custom task logic.
"""
