# mirrorbits

Building blocks of a geographic download redirector, a service that sends each
download to a suitable mirror out of a set of mirrors. The package is a library:
it holds the configuration, the Redis storage layer, the cluster bookkeeping,
the download counters and the logs that such a service is made of.

## Modules

- `mirrorbits.core`: command-line flags (`parse_flags`, returning a `Flags`
  dataclass; a first argument of `daemon` selects server mode), build details
  (`get_version_info`, `print_version`), the startup `BANNER`, the database
  format constants and the enums `ContextKey` and `ScannerType`.
- `mirrorbits.config`: the YAML configuration. `default_config` gives the
  defaults, `parse_config` overlays a document on them and validates it,
  `load_config` / `reload_config` read a file and make it current,
  `get_config` returns the current one and `subscribe_config` registers a
  `queue.Queue` that receives `True` on every reload. Invalid settings raise
  `ConfigError`.
- `mirrorbits.filesystem`: `FileInfo`, `evaluate_file_path` and
  `is_in_repository` to keep requested paths inside the local repository
  (escaping paths raise `OutsideRepositoryError`), and `hash_file` /
  `sha256sum`. `hash_file` computes the hashes enabled under `Hashes` in the
  configuration.
- `mirrorbits.database`: the `Redis` handle, with master discovery through
  sentinels, a connection pool and readiness tracking: connections from
  `get()` fail with `DatabaseNotReadyError` until the database format checks
  are done. `new_redis()` creates the handle and runs those checks in the
  background. Also `parse_version` and `parse_info`.
- `mirrorbits.errors`: `DatabaseNotReadyError`, `UnreachableError`,
  `RedisUpgradeRequiredError`, `NotReadyConnection` and `redis_is_loading`.
- `mirrorbits.pubsub`: `Pubsub`, which listens to the cluster and update
  channels and forwards messages to subscribed queues, `PubsubEvent`,
  `publish` and `send_publish`.
- `mirrorbits.lock`: `acquire_lock`, a Redis lock kept alive in the background
  until `Lock.release()` (it is also a context manager). A taken lock raises
  `AlreadyLockedError`.
- `mirrorbits.upgrade`: `get_db_format_version`, `upgrade_needed`, `upgrade`
  and `UpgraderV1`, which moves a format 0 database to format 1 (mirrors keyed
  by numeric ID instead of by name).
- `mirrorbits.cluster`: `Cluster` announces this node on the pubsub channel,
  tracks the other nodes and tells with `is_handled` which mirrors this node
  is in charge of.
- `mirrorbits.requestcontext`: `RequestContext` works out from a query string
  and headers what a request asks for (`RequestType`) and its TLS requirement
  (`SecureOption`).
- `mirrorbits.stats`: `Stats` counts downloads per file and per mirror in
  memory and commits them to Redis every half second; counters are kept in
  memory while Redis is unavailable.
- `mirrorbits.logs`: `RuntimeLogger` for the program's own log messages,
  `DownloadsLogger` for the downloads log and `format_download` for its lines.

## Requirements

- Python 3.10 or later
- A Redis server, version 3.2.0 or later

## Configuration

The configuration is a YAML file. Settings left out keep their defaults; only
`Repository` must be given. `OutputMode` must be `auto`, `json` or `redirect`
and `WeightDistributionRange` must be greater than zero.

```yaml
Repository: /srv/repo
ListenAddress: ":8080"
OutputMode: auto
RedisAddress: 127.0.0.1:6379
RedisDB: 0
LogDir: /var/log/mirrorbits
Hashes:
    SHA256: true
Fallbacks:
    - URL: https://fallback.example.com/
      CountryCode: fr
      ContinentCode: eu
```

```python
from mirrorbits import config

cfg = config.load_config("/etc/mirrorbits.conf")
print(cfg.repository, cfg.listen_address)
```

When no file is given, `/etc/mirrorbits.conf` is used if it exists.

## Examples

Keep requests inside the repository:

```python
from mirrorbits import filesystem

filesystem.is_in_repository("/srv/repo", "/srv/repo/pub/file.iso")   # True
filesystem.is_in_repository("/srv/repo", "/srv/repository/file.iso")  # False
```

Classify a request:

```python
from mirrorbits.requestcontext import RequestContext, RequestType, SecureOption

ctx = RequestContext("mirrorlist&https=1")
ctx.type is RequestType.MIRRORLIST      # True
ctx.secure_option is SecureOption.WITHTLS  # True
```

The sorted list of mirror IDs that the cluster shares between its nodes:

```python
from mirrorbits.cluster import add_mirror_id_to_slice, remove_mirror_id_from_slice

add_mirror_id_to_slice([1, 3], 2)             # [1, 2, 3]
remove_mirror_id_from_slice([1, 2, 3], 1)     # [2, 3]
```

Connect to Redis once the configuration is loaded, and take a lock:

```python
from mirrorbits.database import new_redis
from mirrorbits.lock import acquire_lock

db = new_redis()
print(db.get_list_of_mirrors())   # {mirror ID: name}
with acquire_lock(db, "maintenance"):
    ...
db.close()
```

Write the downloads log:

```python
from mirrorbits.logs import DownloadsLogger

downloads = DownloadsLogger()
downloads.reload("/var/log/mirrorbits")   # opens downloads.log in that directory
```

## What the package does not do

The package has no command to run and no HTTP server: it does not answer
download requests, select or rank mirrors, look up client locations, render
mirror lists or JSON replies, or scan mirrors and run health checks. It
provides the configuration, storage, clustering, statistics and logging parts
that such a service uses. `Stats` and `format_download` take mirror and result
objects from the caller and only read the attributes they need (`id`, `name`,
`distance`, `asnum`, `country_fields`, and so on).

## Tests

The tests use pytest and are installed with the `test` extra.