# sandstore

A small distributed file store. Files are cut into chunks. The chunks are
written to local disk and copied to peer nodes. File metadata is replicated
across the cluster through a Raft log, so every node agrees on which files
exist.

The package needs nothing outside the Python standard library.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Running a local cluster

```
sandstore-raft
sandstore-raft --base-dir /tmp/sandstore
```

This starts three Raft nodes in one process. They listen on ports 8080, 8081
and 8082 and know each other as peers. Leader election starts automatically.
Chunks are written under `<base-dir>/chunks/<node-id>`. Each node logs to
`<base-dir>/logs/<node-id>.log`. The default base directory is the current
directory. Stop the cluster with Ctrl+C or SIGTERM.

Nodes talk to each other over HTTP. Every message is a JSON document posted to
`/message` with the fields `From`, `Type` and `Payload`. Byte fields inside a
payload, such as `Data`, are base64 encoded.

## Talking to a node

There is no client command. To store or read a file, send a message with
`HTTPCommunicator.send`. The communicator does not need to be started in order
to send.

```python
from sandstore.communication import Message, MessageType, ReadFileRequest, SandCode, StoreFileRequest
from sandstore.http_communicator import HTTPCommunicator
from sandstore.log_service import LocalDiscLogService

ls = LocalDiscLogService("./logs", "client")
comm = HTTPCommunicator("localhost:9000", ls)

resp = comm.send(
    "localhost:8080",
    Message("client", MessageType.STORE_FILE, StoreFileRequest(path="hello.txt", data=b"Hello")),
)
print(resp.code)  # SandCode.OK on success

resp = comm.send("localhost:8080", Message("client", MessageType.READ_FILE, ReadFileRequest(path="hello.txt")))
if resp.code == SandCode.OK:
    print(resp.body)
```

Only the Raft leader carries out store and delete requests. A follower that
receives one forwards it to the leader it knows of. If it knows of no leader,
it answers `UNAVAILABLE`. Read requests are served by whichever node receives
them, from that node's own metadata.

## Building blocks

Each part of a node lives in its own module and can be used on its own.

| Module | What it provides |
| --- | --- |
| `sandstore.log_service` | `LogEvent`, `LocalDiscLogService`: levelled logs, one file per node |
| `sandstore.chunk_service` | `FileChunk`, `ChunkReplica`, `LocalDiscChunkService`: chunk storage on local disk |
| `sandstore.metadata_service` | `FileMetadata`, `InMemoryMetadataService`, `new_file_metadata` |
| `sandstore.communication` | `Message`, `Response`, `SandCode`, `MessageType`, the request payloads, `encode_payload`, `decode_payload` |
| `sandstore.http_communicator` | `HTTPCommunicator`: sends and serves messages over HTTP |
| `sandstore.cluster_service` | `Node`, `InMemoryClusterService` |
| `sandstore.chunk_replicator` | `DefaultChunkReplicator`: copies chunks to healthy peers, fetches and deletes them |
| `sandstore.metadata_log` | `MetadataLog`, `MetadataLogEntry`, `encode_entries`, `decode_entries` |
| `sandstore.raft_cluster` | `RaftClusterService`: elections, heartbeats and log replication |
| `sandstore.raft_metadata_replicator` | `RaftMetadataReplicator`: applies committed entries to the metadata service |
| `sandstore.file_service` | `RaftFileService`: stores and reads whole files |
| `sandstore.server` | `RaftServer`: routes incoming messages to the services |
| `sandstore.cli` | `create_raft_server`, `main` |

### Storing chunks locally

```python
from sandstore.log_service import LocalDiscLogService
from sandstore.chunk_service import LocalDiscChunkService

ls = LocalDiscLogService("./logs", "node-a", "INFO")
chunks = LocalDiscChunkService("./chunks/node-a", ls)

chunks.write_chunk("chunk-1", b"hello")
assert chunks.read_chunk("chunk-1") == b"hello"
chunks.delete_chunk("chunk-1")
```

Failures are raised as exceptions. For example:

- `ChunkReadError` when a chunk cannot be read.
- `FileAlreadyExistsError` or `MetadataNotFoundError` from the metadata service.
- `NotLeaderError` when metadata is replicated from a node that is not the Raft leader.

The errors of each module share a common base class, such as
`ChunkServiceError`, `MetadataError`, `ClusterError` or `FileServiceError`.

### Building a node yourself

```python
from sandstore.cli import create_raft_server
from sandstore.cluster_service import Node

server = create_raft_server(
    ":9090",
    "9090",
    [Node("9091", "localhost:9091", True)],
    ".",
)
server.start()
# ...
server.stop()
```

## What it does not do

- File metadata is kept in memory only. When a node restarts, it forgets every
  file it knew of, although the chunk files remain on disk.
- `RaftFileService.delete_file` removes nothing. A `delete_file` request
  therefore answers `OK` but leaves the file's chunks and metadata in place.
- Chunks are 8 MiB. A file that needs five or more chunks is refused with
  `ChunkStoreFailedError`.
- Nodes communicate only over plain HTTP. There is no authentication and no
  encryption.