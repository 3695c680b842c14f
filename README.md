# tlogkit

Building blocks for a signed, sharded transparency log: identifiers for log
entries, the mapping of a virtual log index onto a sequence of shards, an
in-memory signer that issues timestamping certificates, a small attestation
store, parsers for Alpine packages and Helm provenance files, and typed log
entries (hashed records, Alpine packages and in-toto attestations) that
validate, verify and canonicalize themselves.

## Installation

```
pip install tlogkit
```

Python 3.10 or later is required. To run the tests:

```
pip install "tlogkit[test]"
pytest
```

## Entry IDs (`tlogkit.sharding`)

An entry ID is a 16-character hex tree ID followed by a 64-character hex UUID.

```python
from tlogkit.sharding import (
    create_entry_id_from_parts,
    get_tree_id_from_id_string,
    get_uuid_from_id_string,
    pad_to_tree_id_len,
)

uuid = "f794467401d57241b7903737211c721cb3315648d077a9f02ceefb6e404a05de"
entry_id = create_entry_id_from_parts("12345", uuid)
print(str(entry_id))                       # "0000000000012345f79446..."
print(pad_to_tree_id_len("12345678"))      # "0000000012345678"
print(get_uuid_from_id_string(str(entry_id)) == uuid)   # True
print(get_tree_id_from_id_string(str(entry_id)))        # "0000000000012345"
```

`validate_uuid`, `validate_tree_id` and `validate_entry_id` check the parts on
their own. A tree ID must be a non-zero signed 64-bit number in hex. Invalid
input raises `ShardingError` (a `ValueError`); asking for the tree ID of a
plain UUID raises `PlainUUIDError`. `get_uuid_from_id_string` still returns the
UUID of an entry ID whose tree ID is zero.

## Log ranges (`tlogkit.ranges`)

A sharding configuration is a YAML list of inactive trees, in order:

```yaml
- treeID: 1
  treeLength: 3
  encodedPublicKey: c2hhcmRpbmcK
- treeID: 2
  treeLength: 4
```

```python
from tlogkit.ranges import load_log_ranges, virtual_log_index

ranges = load_log_ranges("sharding.yaml", 45, tree_size_lookup=lambda tree_id: 0)
print(ranges)                              # "1=3,2=4,active=45"
print(ranges.resolve_virtual_index(5))     # (2, 2)
print(virtual_log_index(1, 45, ranges))    # 8
print(ranges.public_key("active-key", "1"))   # "sharding\n"
print(ranges.public_key("active-key", "2"))   # "active-key"
```

- `load_log_ranges(path, tree_id, tree_size_lookup=None)` returns an empty
  `LogRanges` when `path` is empty, and raises `ShardingError` when `tree_id`
  is zero. `tree_size_lookup` is called with a tree ID for any range whose
  `treeLength` is missing or zero, and returns that tree's current size;
  without it such a range is an error. `encodedPublicKey` is base64-decoded
  into `LogRange.decoded_public_key`.
- `log_ranges_from_path(path)` only reads the YAML into `LogRange` objects.
- `virtual_log_index` returns `-1` for a tree ID that is neither inactive nor
  active.
- `LogRanges.public_key` raises `ShardingError` for an unknown tree ID.

## Signing (`tlogkit.signer`)

```python
from tlogkit.signer import new_signer, new_timestamping_cert_with_chain

signer = new_signer("memory")
signature = signer.sign_message(b"payload")
signer.verify_signature(signature, b"payload")   # raises SignerError if invalid

tsa_key = new_signer("memory")
chain = new_timestamping_cert_with_chain(tsa_key.public_key, signer, None)
```

`MemorySigner` holds an ECDSA P-256 key and signs with SHA-256; its
`public_key` is a property. `new_timestamping_cert_with_chain` issues a
certificate for the given public key, valid for ten years and marked for
timestamping only. Without a chain, a self-signed root CA for the signer is
generated; the returned list starts with the timestamping certificate and
ends with the root, and the chain is checked before it is returned.

## Attestation storage (`tlogkit.storage`)

```python
from tlogkit.storage import open_attestation_storage

store = open_attestation_storage("mem://")
store.store_attestation("key", b"data")
print(store.fetch_attestation("key"))      # b"data"
print(store.fetch_attestation("missing"))  # None
```

`file:///some/dir` gives a `FileBlobStorage` that keeps each attestation as a
file below an existing directory. Keys may contain `/` but no `.` or `..`
parts and may not be absolute. Other URL schemes raise `StorageError`.

## Alpine packages and Helm provenance

```python
from tlogkit.apk import parse_package

with open("package.apk", "rb") as handle:
    package = parse_package(handle)
print(package.pkginfo["pkgname"])
package.verify_signature(open("signer.pub", "rb").read())   # raises ApkError if invalid
```

`parse_package` checks that the SHA-256 of the data member matches the
`datahash` in `.PKGINFO`; `verify_signature` takes a key object or a PEM key
or certificate (RSA or EC).

```python
from tlogkit.provenance import parse_provenance

provenance = parse_provenance(open("chart-0.1.0.tgz.prov", "rb").read())
algorithm, digest = provenance.chart_algorithm_hash()
```

`decode_clearsign` decodes an OpenPGP clearsigned message into a
`ClearsignBlock` holding the signed text and the raw signature packet.

## Entry types

`HashedRekordV001Entry` (`tlogkit.hashedrekord_entry`), `AlpineV001Entry`
(`tlogkit.alpine_entry`) and `IntotoV001Entry` (`tlogkit.intoto_entry`) share
one life cycle, described by the `Entry` base class in `tlogkit.entries`:

- `create_from_artifact_properties(props)` builds a proposed entry (a dict
  with `apiVersion`, `kind` and `spec`) from an `ArtifactProperties`;
- `unmarshal(proposed)` loads and validates a proposed entry;
- `validate()` checks the fields together and verifies the signature;
- `canonicalize()` returns compact JSON bytes with sorted keys, leaving out
  artifact content; `canonicalize_entry(entry)` re-serializes that per RFC
  8785;
- `index_keys()` lists the keys to index the entry under;
- `attestation()` returns what to store alongside the entry, if anything.

```python
from tlogkit.entries import ArtifactProperties
from tlogkit.hashedrekord_entry import HashedRekordV001Entry

props = ArtifactProperties(
    signature_path="artifact.sig",
    public_key_path="key.pem",
    artifact_hash="<sha256 hex of the artifact>",
    pki_format="x509",
)
proposed = HashedRekordV001Entry().create_from_artifact_properties(props)

entry = HashedRekordV001Entry()
entry.unmarshal(proposed)
print(entry.index_keys())
canonical = entry.canonicalize()
```

Content that fails validation raises `ValidationError` (a `ValueError`).
`IntotoV001Entry` verifies DSSE envelopes (see `Envelope` and `pae`) and keeps
the envelope payload as its attestation unless it is larger than
`max_attestation_size` (100 KiB by default). `tlogkit.entries` also offers
`decode_entry`, `canonicalize_json`, `parse_public_key` and
`public_key_emails`.

## What is not included

tlogkit is a library only. It has no command-line tool and no HTTP server,
does not talk to a Merkle tree backend (tree sizes come from the
`tree_size_lookup` you pass in), and has no registry that picks an entry class
by kind and version. The only signer is the in-memory one, attestation
storage is in memory or on local disk only, and Helm provenance files are
parsed but their OpenPGP signatures are not verified. There is no Helm or JAR
entry type.