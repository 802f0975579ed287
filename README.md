# chartherd

chartherd looks through the Helm releases installed in a Kubernetes cluster
and reports the ones whose chart has a newer version available.

It finds releases in two ways, in this order:

- `HelmChart` custom resources (`helm.cattle.io/v1`), when the
  `helmcharts.helm.cattle.io` CRD is installed in the cluster;
- Helm release Secrets of type `helm.sh/release.v1`, named
  `sh.helm.release.v1.<name>.v<revision>`. For each release the revisions are
  read newest first, and the first `deployed` one is used.

Latest versions come from HTTP chart repositories (their `index.yaml`, newest
non-prerelease version) or from OCI registries (the semantic-version tags of
the chart's repository, newest first). Answers are cached for the length of
one check.

For a release found only as a Secret, the chart's repository is not recorded,
so chartherd tries, in turn:

1. the repository named by a `HelmChart` resource of the same release name
   that has no version pinned;
2. every repository in the local Helm repositories file, with
   `--use-local-helm-repos`;
3. the repositories of the chart's dependencies, with `--check-chart-deps`.

## Installation

```
pip install .
```

## Usage

Run one check:

```
chartherd
```

Outside a cluster the kubeconfig is taken from `KUBECONFIG` if it is set,
otherwise from `--kubeconfig`, and the context given by `--kubeconfig-context`
is used. Inside a cluster (`KUBERNETES_SERVICE_HOST` is set) the pod's service
account token and CA certificate are used, and chartherd keeps running,
checking every `--interval`, just as with `--daemon`.

| Option | Default | Meaning |
| --- | --- | --- |
| `--kubeconfig PATH` | `~/.kube/config` | Kubeconfig file |
| `--kubeconfig-context NAME` | `default` | Kubeconfig context |
| `--namespace NS` | all namespaces | Only check releases in this namespace |
| `--output FORMAT` | `table` | `table`, `json` or `none` |
| `--include-all` | off | Report every chart, not only those with an update |
| `--daemon` | off | Keep running, checking every `--interval` |
| `--interval DURATION` | `1h` | Time between checks, e.g. `30m`, `1h30m`, `90s` |
| `--concurrent-requests N` | `10` | Releases checked at the same time |
| `--use-local-helm-repos` | off | Also try every repo in the Helm repositories file |
| `--helm-repos-path PATH` | `~/.config/helm/repositories.yaml` | Helm repositories file |
| `--check-chart-deps` | off | Guess a chart's repo from its dependencies' repos |
| `--metrics-enabled` | off | Serve results as Prometheus metrics |
| `--metrics-http-bind-to ADDR` | `:9420` | Metrics listener, `[HOST]:PORT` |
| `--metrics-route PATH` | `/metrics` | Metrics HTTP route |
| `--debug` | off | Debug logging |

Each option may also be written with a single dash (`-output json`). The
on/off options take an optional value such as `true` or `false`
(`--daemon=false`).

Every option can be given as an environment variable as well: the option name
in upper case with dashes turned into underscores, for example
`OUTPUT=json chartherd` or `INCLUDE_ALL=true chartherd`. Command line options
win over environment variables.

An interval that cannot be parsed, or is not positive, is logged as an error
and replaced by `1h`. Each request to the cluster is bounded by a 30 second
timeout.

Log lines go to stderr as `time=... level=... msg=...`. The command exits
with status 2 for an unknown output format or an unreadable environment
variable, and 1 when the Helm repositories file or the cluster credentials
cannot be loaded.

Examples:

```
chartherd --output json --include-all
chartherd --namespace kube-system
chartherd --daemon --interval 30m --metrics-enabled
```

### Output

`table` prints a borderless, tab-padded table with the columns
`CHART NAME`, `CHART REPO`, `RELEASE NAME`, `RELEASE NAMESPACE`, `CUR VER`,
`NEW VER` and `METHOD`. `json` prints an array of objects with the keys
`chartName`, `chartRepo`, `releaseName`, `releaseNamespace`,
`installedChartVersion`, `availableChartVersion` and `discoveryMethod`
(`cattleCRD` or `secret`). `none` prints nothing, which is useful together
with `--metrics-enabled`.

## Metrics

With `--metrics-enabled`, an HTTP listener serves the Prometheus text format
at the metrics route. Each reported chart is a `chartherd_charts` gauge with
the value 1 and the labels `chart_name`, `chart_repo`, `release_name`,
`release_namespace`, `current_version`, `available_version` and
`discovery_method`. The series are replaced after every check. If the
listener cannot bind, it retries every 30 seconds.

## Library use

The pieces can be used on their own:

- `chartherd.releaseutils` — `Version`, `DiscoveredChartRelease`,
  `DiscoveredChartReleases`, `KnownChartSources`, `ProcessedReleases` and
  `decode_helm_release` for Helm release payloads;
- `chartherd.fetchutils` — `Fetcher` with
  `fetch_http_chart_latest_version` and `fetch_oci_chart_latest_version`,
  plus `load_repositories_file`, `parse_repo_index`, `latest_chart_version`
  and `sort_tags`;
- `chartherd.kube` — `locate_kubeconfig`, `load_kubeconfig`,
  `load_in_cluster_config` and the read-only `KubeClient`;
- `chartherd.cattlechecker.CattleChecker` and
  `chartherd.secretchecker.SecretChecker`;
- `chartherd.updatechecker.UpdateChecker`, whose `run()` performs one full
  check and returns the discovered releases, with `format_table` and
  `format_json`;
- `chartherd.metrics.MetricsExporter`.

## Limitations

- Kubeconfig users are authenticated by token, token file, username and
  password, or client certificate only; `exec` and `auth-provider` entries
  are not supported.
- OCI registries are queried anonymously, with the bearer-token challenge a
  registry offers for public pulls; registry credentials are not read.
- Of the Helm repositories file only each repository's URL is used;
  repository credentials and certificates are ignored.