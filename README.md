# imagesweep

imagesweep cleans container images off a Kubernetes node. It talks to the
node's container runtime (containerd, CRI-O or dockershim) over the Container
Runtime Interface (API versions `v1` and `v1alpha2`), works out which images
are not used by any container, and removes the ones it is told to remove,
while honouring an exclusion list.

The parts run side by side in one pod and hand image lists to each other as
JSON through named pipes under `/run/eraser.sh/shared-data/`:

- the **collector** lists every image on the node, drops running and excluded
  ones, and writes the rest to the scanner's pipe (or straight to the
  remover's pipe when scanning is disabled), then waits for the remover to
  report completion;
- a **scanner**, if one is used, reads that list, decides which images are
  non-compliant and passes them on (see "Writing a scanner");
- the **remover** deletes the images it receives, or those named in an image
  list file, and then writes `complete` to the collector's and, if present,
  the scanner's completion pipe.

## Installation

```
pip install imagesweep
```

Python 3.10 or later is required.

## Commands

```
imagesweep-collector [--runtime NAME] [--scan-disabled] [--log-level LEVEL]
imagesweep-remover   [--runtime NAME] [--imagelist PATH] [--log-level LEVEL]
```

`--runtime` picks the runtime socket: `containerd` (the default,
`/run/containerd/containerd.sock`), `cri-o` (`/run/crio/crio.sock`) or
`docker` (`/run/dockershim.sock`). `--log-level` accepts `debug`, `info`,
`warn` or `error` (also `dpanic`, `panic`, `fatal`); `debug` logs in a
readable console format, every other level as JSON lines on stderr.

Both commands read exclusion lists from `exclude-*` directories in the
working directory and exit with status 1 on failure.

The collector's `--scan-disabled` sends its list directly to the remover.

The remover reads its targets from the pipe filled by the scanner or the
collector, or, with `--imagelist`, from a JSON file holding a list of image
IDs, names or digests. The entry `"*"` prunes every non-running,
non-excluded image. Running images are never removed. When the
`OTEL_EXPORTER_OTLP_ENDPOINT` environment variable is set, the number of
removed images is pushed as the `images_removed_run_total` metric in OTLP
JSON over HTTP to `http://<endpoint>/v1/metrics`, tagged with the
`NODE_NAME` environment variable.

## Exclusions

Each `exclude-*` directory holds a JSON file (the first `.json` file by
name is read) of the form

```json
{"excluded": ["docker.io/library/alpine:3.7.3", "ghcr.io/myorg/*", "busybox:*"]}
```

An entry matches an image by ID, name or digest. An entry ending in `/*`
excludes everything whose ID, name or digest starts with the repository
prefix; one ending in `:*` excludes every tag of an image.

## Library use

```python
from imagesweep.cri import new_eraser_client
from imagesweep.remover import remove_images
from imagesweep.utils import parse_excluded

with new_eraser_client("/run/containerd/containerd.sock") as client:
    excluded = parse_excluded("./")
    removed = remove_images(client, ["*"], excluded)
print(f"removed {removed} images")
```

- `imagesweep.cri`: `new_eraser_client` / `new_collector_client` connect and
  negotiate the API version, returning a `RuntimeClient` with
  `list_images()`, `list_containers()`, `delete_image(image)` and `close()`.
  If no version works, a `MultiError` lists every failure.
- `imagesweep.collector.get_images(client, excluded)` returns the
  non-running, non-excluded images as `imagesweep.images.Image` records.
- `imagesweep.images`: the `Image` dataclass (`image_id`, `names`, `digests`)
  and `images_to_json` / `images_from_json`.
- `imagesweep.utils`: `parse_endpoint("unix:///run/containerd/containerd.sock")`
  returns `("unix", "/run/containerd/containerd.sock")` and raises an
  `EndpointError` subclass for unsupported or malformed endpoints;
  also `is_excluded`, `parse_excluded`, `parse_image_list`,
  `process_repo_digests` and the pipe helpers.
- `imagesweep.metrics`: a small counter/histogram pipeline with
  `configure_metrics(endpoint)`, `export_metrics`, and the
  `record_metrics_eraser`, `record_metrics_scanner` and
  `record_metrics_controller` helpers.
- `imagesweep.logger.configure(level)` sets up root logging as the commands do.
- `imagesweep.version.get_user_agent("manager")` builds a user agent string
  `eraser/<component>/<version> (<os>/<arch>) <commit>/<time>`.

## Writing a scanner

`imagesweep.scanner_template.ImageProvider` handles the scanner's side of
the hand-off: `receive_images()` creates the completion pipe and returns the
collected images, `send_images(non_compliant, failed)` passes images to the
remover (failed ones too, unless `delete_scan_failed_images=False`), and
`finish()` waits for the remover and returns whether `complete` arrived.

`imagesweep.scanner_config` provides the scanner configuration:
`default_config()`, `load_config(path)` (reads the YAML string at
`components.scanner.config` of an eraser configuration file over the
defaults), `parse_duration("1h30m")`, the option-map helpers, and
`scan(scanner, images)`, which runs any object with `scan(image)` returning
a `ScanStatus` and `expired()`, and returns the non-compliant images, the
failed ones, and whether time ran out.

## What it does not do

imagesweep has no vulnerability scanner of its own and no scanner command:
deciding whether an image is non-compliant is left to the object you pass to
`scan`. It also has no cluster-side controller for scheduling jobs across
nodes; it runs on one node at a time.