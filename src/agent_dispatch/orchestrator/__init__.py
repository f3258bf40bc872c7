"""Task queue, machine registry, executor and recovery sweeps.

Workers on different machines coordinate only through the shared task store:
a claim is one guarded UPDATE, every later transition is a compare-and-set on
the current status, and the recovery sweep returns tasks of silent machines to
the queue. There is no broker process; a SQLite file is enough on one host and
PostgreSQL serves several machines with the same code.
"""
