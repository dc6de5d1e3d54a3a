"""Analysis orchestrator for pi session logs.

Why a SQLite table and not a broker?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The daemon runs on one machine next to the session files it analyzes. The
queue has to survive restarts and be readable by the CLI while the daemon is
running, and the work units are long (tens of minutes of an external agent)
and few. What matters is the boundary with the ``pi`` agent:

- building the prompt, argv and skill set for each job;
- supervising the subprocess with a hard timeout and graceful termination;
- parsing its NDJSON event stream into a validated node;
- classifying agent failures into transient and permanent ones that drive
  the retry budget.

A lease column plus a single conditional ``UPDATE ... RETURNING`` gives
exactly-once claims across threads and processes without an extra service.
"""
