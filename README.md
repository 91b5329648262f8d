# dfdindex

An index server for a distributed file downloader. Peers tell the server which
files they hold; other peers ask the server where a file can be fetched from.
Several index servers can join into a network, copy one another's database when
a new server joins, and forward every write so that all of them stay in step.

## What it does

- Keeps an SQLite database (`dfdindex.database.Database`) of peers (id,
  address, port), files (id, size) and which peer indexes which file.
- Answers index, drop, re-register and source requests from clients over TCP.
  While a request is pending the client is sent a `KEEP_ALIVE` message every
  second.
- Hands each request to a pool of worker threads over local UDP. Source
  requests are shared round-robin among the reader workers; all writes go to
  one writer.
- When the writer misses five replies in a row, the readers hold a bully
  election (`dfdindex.election.ElectionNode`) and the winner becomes the new
  writer. A supervisor restarts read workers that have gone down every five
  seconds.
- Forwards writes to every known server and removes servers that do not
  acknowledge them (`dfdindex.syncing`).
- Checks clients reported through a control request, and drops their index
  entry when they cannot be reached.
- When a new server joins, sends it a backup of the database in 64 KiB chunks,
  then replays the writes that came in while the copy was being made
  (`dfdindex.migration`).

Messages are length-prefixed frames whose layout is defined in
`dfdindex.messages` (`Message`, `MessageType`, `encode_message`,
`decode_message`, `send_frame`, `recv_frame`).

## Installing

```
pip install .
```

Nothing is needed beyond the Python standard library (3.10 or later).

## Running a server

Start a lone server on an address and port:

```
dfdindex 127.0.0.1 8000
```

Join an existing network by also giving the address and port of a server that
is already running:

```
dfdindex 127.0.0.1 8001 --connect 127.0.0.1:8000
```

The new server registers with the known server, learns about the other servers
in the network, downloads its database and merges it into its own.

Other options:

- `--db PATH` — the index database file (default `dfd-serv.db`).
- `-v`, `--verbose` — log debug output.

The server stops on Ctrl-C. During a migration it writes a temporary copy of
the database to `temp.db` in the working directory.

## Using it from Python

The parts can also be used on their own. For example, the database layer:

```python
from dfdindex.database import Database
from dfdindex.sourceinfo import SourceInfo

with Database("index.db") as db:
    peer = SourceInfo(peer_id=7, ip_addr="10.0.0.5", port=9000)
    db.index_file(uuid=42, indexer=peer, f_size=1024)
    print(db.grab_sources(42))
```

Failed database operations raise `dfdindex.database.DatabaseError`.

`dfdindex.server.run_server(ip, port, connect_ip, connect_port, db_path)` runs
a full server from code until interrupted.

## What it does not do

This package is the index server only. It has no peer program: nothing here
indexes local files, seeds them to other peers or downloads them. Clients speak
to the server with the messages in `dfdindex.messages`, and must be written
separately.

## Running the tests

```
pip install .[test]
pytest
```