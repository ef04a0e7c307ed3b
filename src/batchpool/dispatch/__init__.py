"""Batch dispatch of independent file jobs over local and remote workers.

Why not ``concurrent.futures`` / ``multiprocessing.Pool``?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
A stock executor covers the local fan-out but none of the boundary rules
this package owns:

- One execution slot per worker handle, local or remote, with a stable
  worker id so the first jobs map to the lowest-numbered workers.
- A liveness deadline per in-flight job: an overdue or unreachable remote
  slot fails its job and leaves the pool instead of blocking the batch.
- Graceful cancellation that lets in-flight jobs finish and reports the
  never-dispatched ones as ``cancelled``.
- Per-job failures that always arrive as data (a failure result), so one
  bad file cannot abort the batch.
"""
