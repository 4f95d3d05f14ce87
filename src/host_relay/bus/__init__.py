"""Filesystem message bus between an automation client and a single-threaded host.

Why not a socket, a pipe or a broker?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The host application exposes no IPC channel of its own and only mutates its
state on one thread, polled on its own tick.  The filesystem is the one
channel both sides can always reach:

- Requests are JSON files dropped into a queue directory; moving a consumed
  file into the archive is the single-consumer guarantee.
- Notifications from watcher threads never touch host state; they are handed
  to the affinity dispatcher and drained on the host tick.
- The compile ledger is a plain JSON file that the host keeps exclusively
  locked for exactly as long as it is compiling.
- The external client only writes requests and reads/probes the ledger, with
  its own timeout budget.
"""
