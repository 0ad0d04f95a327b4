# sensornet

A small sensor network built on a text protocol over TCP. Each message is a
numeric code, a space and an optional payload, for example `23 1234567890,-1`.

It has three parts:

- a **Status Server (SS)**, which keeps a risk status (0 or 1) for each sensor;
- a **Location Server (SL)**, which keeps a location for each sensor;
- a **sensor** client, which registers with both servers and queries them.

The two servers link to each other over one peer-to-peer connection. When a
sensor asks the SS for its status and the SS has it marked at risk (1), the SS
asks the SL for that sensor's location and passes the answer back. A sensor
that is not at risk gets `-1`, meaning normal.

No third-party libraries are needed.

## Installation

```
pip install .
```

## Running the servers

```
sensornet-server <peer_ip> <p2p_port> <client_listen_port> <SS|SL>
```

`peer_ip` must be an IPv4 address. Start two servers that share a P2P port.
The first one finds no peer and listens for one on that port; the second one
connects to it and the two complete a handshake.

```
sensornet-server 127.0.0.1 60000 61000 SS
sensornet-server 127.0.0.1 60000 62000 SL
```

Each server has 15 sensor slots, numbered from 1. A sensor that registers
without a location (`-1`) is given a random location from 1 to 10, and on the
SS a random initial risk status. The server reads these commands from standard
input:

| Command                      | Effect                                                   |
|------------------------------|----------------------------------------------------------|
| `kill`                       | Sends a disconnect request to the peer, once linked      |
| `exit`                       | Shuts the server down                                    |
| `set_risk <SensorID> <0\|1>`  | Sets a registered sensor's risk status (SS only)         |

When a peer accepts a `kill`, it confirms, drops the link and listens for a
new peer; the server that sent `kill` shuts down on the confirmation. A server
also stops when its standard input ends.

## Running a sensor

```
sensornet-sensor <ss_server_ip> <ss_port> <sl_server_ip> <sl_port>
```

For example:

```
sensornet-sensor 127.0.0.1 61000 127.0.0.1 62000
```

The sensor picks a random 10-digit ID and registers with both servers. It
shuts down if either registration fails or if the two servers confirm
different slot IDs. After that it reads these commands from standard input:

| Command              | Effect                                                         |
|----------------------|----------------------------------------------------------------|
| `check failure`      | Asks the SS for this sensor's status and reports any alert     |
| `locate <SensorID>`  | Asks the SL where a sensor is                                  |
| `diagnose <LocID>`   | Asks the SL for the sensors at a location (1 to 10)            |
| `kill`               | Disconnects from both servers and exits                        |

Alert locations are reported with their region: 1–3 Norte, 4–5 Sul,
6–7 Leste, 8–10 Oeste.

All output goes to standard output as `[INFO] ...` lines; errors go to
standard error.

## Using the package in code

`sensornet.protocol` encodes and decodes messages:

```python
from sensornet.protocol import MessageCode, build_message, parse_message

wire = build_message(MessageCode.REQ_SENSLOC, "1234567890")   # b"38 1234567890"
message = parse_message(wire)
print(message.code, message.payload)                          # 38 1234567890
```

`parse_message` raises `ProtocolError` when the data does not start with a
code. `Message.number` reads the payload as a leading integer, and
`status_payload` formats OK and ERROR payloads as two digits (`"09"`).
`MessageCode`, `OkCode` and `ErrorCode` hold the protocol's numbers.

`sensornet.registry.ClientRegistry` is the table of sensor slots a server
keeps. Its request handlers return a `Reply` saying what to send back and
whether to close the connection:

```python
import random
from sensornet.registry import ClientRegistry, ServerRole

registry = ClientRegistry(ServerRole.LOCATION, rng=random.Random(1))
slot = registry.allocate("connection")              # 1
registry.register(slot, "1234567890,4")             # reply carries RES_CONNSEN "1"
print(registry.locate("1234567890").message)        # RES_SENSLOC "4"
```

`sensornet.peer.PeerLink` is the state machine of the server-to-server link:
`handle_message` advances it and returns a `PeerAction` telling the server what
to send and whether to close, listen again or shut down.

`sensornet.server.Server` and `sensornet.sensor.Sensor` are the two programs;
`connect_and_register` registers a sensor with one server and raises
`SensorError` on failure.

## What it does not do

- Nothing is stored: sensors, statuses and locations live only while a server runs.
- Each read from a socket is taken as one whole message of at most 500 bytes;
  there is no framing for messages split across reads or sent back to back.
- A server links with one peer at a time, over IPv4 only.
- The server waits on standard input with `selectors`, so it needs a POSIX system.

## Running the tests

```
pip install .[test]
pytest
```