# flowchain

flowchain builds processing graphs from a declarative YAML description and
runs every node on its own thread, connected by bounded channels.

Nodes never name their downstream peers. Each node carries `labels`, and a
node lists `inputs` as label selectors; every node whose labels match a
selector feeds into it through its own channel. `ChainBuilder` derives the
connections, checks the connectivity limits a node type declares (required
and maximum inputs and outputs), starts the nodes and waits for all of them
to finish.

## Installation

```
pip install flowchain
```

## Configuration

A configuration is a list of nodes, each with `metadata` and `spec`:

```yaml
nodes:
  - metadata:
      name: numbers
      type: prime_generator
      labels:
        role: source
    spec:
      params:
        start: 2
        end: 100

  - metadata:
      name: sieve
      type: prime_filter
      labels:
        role: filter
    spec:
      params: {}
      inputs:
        - role: source

  - metadata:
      name: primes
      type: prime_sink
      labels:
        role: collector
    spec:
      params: {}
      inputs:
        - role: filter
```

`flowchain.model.load_config_from_yaml` reads such a file into a `Config`;
`save_config_to_yaml` writes one back.

Node types come from registration functions:

- `flowchain.qnet.register_qnet_node_types` — `sequence`, `queue`,
  `combiner`, `sink` and `collector`: a queueing-network simulation with
  exponential arrival and service times. The combiner always forwards the
  earliest buffered packet.
- `flowchain.prime.register_prime_node_types` — `prime_generator`,
  `prime_filter`, `prime_sink`.
- `flowchain.fibonacci.register_fibonacci_node_types` —
  `fibonacci_generator`, `fibonacci_filter`, `fibonacci_sink`.
- `flowchain.fibonacci_loop.register_fibonacci_loop_node_types` —
  `seed_generator`, `fibonacci_computer`, `fibonacci_merger` and
  `fibonacci_sink`: a feedback loop in which the merger feeds seeds to the
  computer and passes seeds and computed values on to the sink.
- `flowchain.owner.register_owner_node_types` — the queueing types plus
  `target`, a parent node that adds three child nodes (`number-generator`,
  `number-queue`, `number-sink`) to the running graph and finishes once all
  children with an owner reference to it have completed.

## Command line

```
flowchain --help
flowchain prime --config primes.yaml
```

`flowchain KIND` runs one of the example graphs: `qnet`, `prime`,
`fibonacci`, `fibonacci-loop` or `owner`. It loads the configuration, registers
that kind's node types, executes the graph and prints the final status and
processed count of every node. Without `--config` it looks in the current
directory for `config-qnet.yaml`, `config-prime.yaml`,
`config-fibonacci.yaml`, `config-fibonacci-loop.yaml` or
`sample-owner-config-input.yaml`. It exits with status 1 if the
configuration cannot be read or parsed.

## Library use

```python
from flowchain.builder import ChainBuilder
from flowchain.model import load_config_from_yaml
from flowchain.prime import register_prime_node_types

config = load_config_from_yaml("primes.yaml")
builder = ChainBuilder(config)
register_prime_node_types(builder)
builder.execute()

for name, node in builder.get_all_node_states().items():
    print(name, node.status.value, node.stats.total_processed)
```

Your own node types are registered with `ChainBuilder.register_node_type`,
passing a factory that takes the node's `Metadata` and its `params` dict. The
usual choice is a subclass of `flowchain.model.ProcessingNode`: its
`create_function` returns a callable that receives the lists of input and
output channels and is called repeatedly until it returns `True`. Overriding
`connectivity` to return a `ConnectivityMetadata` makes the builder check the
node's connections; a node out of its limits raises
`flowchain.topology.ConnectionValidationError` from `rebuild_connections`.
A node type without a registered factory raises `UnknownNodeTypeError`, and
`execute` raises `ValueError` when the configuration has no nodes.

### Memory file and reconciliation

`ChainBuilder(config, memory_path="state/memory.yaml")` turns on the
reconcile loop. `execute` copies the configuration to that file, and while
the graph runs:

- every 0.1 s the file is checked for edits; added, changed and removed nodes
  are applied (sinks first, generators last) and the graph is rewired, with
  new idle nodes started;
- every second the file is rewritten with each node's current stats, status
  and stored state.

`reconcile_nodes` and `write_stats_to_memory` can also be called directly.
The command line does not set a memory file.

When execution ends, `dump_node_memory` writes every node's record to
`memory-<timestamp>.yaml`, next to the memory file or in a `memory`
directory under the current directory when none is set.

### Plain linear chains

`flowchain.pipeline.Chain` wires stage functions into a straight line
without any configuration:

```python
from flowchain.pipeline import Chain

chain = Chain()
chain.add(source)    # called as source(None, out)
chain.add(stage)     # called as stage(previous, out)
chain.end(collect)   # called as collect(previous)
chain.run(timeout=10)
```

Each stage is called until it returns `True`; `run` returns once every end
stage has finished and re-raises the first error a stage raised. `merge` and
`split` join or branch chains. `Channel`, `select_receive` and
`merge_channels` are available on their own as well.

## What is not included

No example configuration files are installed with the package; the
`flowchain` command needs one in the current directory or given with
`--config`. Runtime state is kept only in the YAML memory and snapshot files;
there is no database or network interface.

## Running the tests

```
pip install flowchain[test]
pytest
```