"""Command line interface for onnx_offload."""

from __future__ import annotations

import argparse
import json
import logging
from typing import List, Optional

import numpy as np
import onnx
from onnx.reference import ReferenceEvaluator

from .backends import BACKENDS
from .config import ProviderConfig, load_config
from .errors import OffloadError
from .log_utils import setup_logging
from .onnx_utils import make_random_inputs
from .provider import OffloadProvider
from .runner import OffloadSession

LOGGER = logging.getLogger(__name__)


def _add_common(ap: argparse.ArgumentParser) -> None:
    ap.add_argument("onnx_model", help="Path to ONNX model")
    ap.add_argument("--config", type=str, default=None, help="JSON provider config")
    ap.add_argument("--backend", type=str, default=None, choices=list(BACKENDS))
    ap.add_argument("--device", type=str, default=None, choices=["cpu", "gpu"])
    ap.add_argument("--exclude-op", action="append", default=[], help="Treat this op type as unsupported (repeatable)")
    ap.add_argument("--dump-dir", type=str, default=None, help="Write each cluster sub-model here")
    ap.add_argument("-v", "--verbose", action="count", default=0)
    ap.add_argument("--log-file", type=str, default=None, help="Also append log records to this file")


def _config_from_args(args: argparse.Namespace) -> ProviderConfig:
    cfg = load_config(args.config) if args.config else ProviderConfig()
    data = cfg.to_dict()
    if args.backend:
        data["backend"] = args.backend
    if args.device:
        data["device"] = args.device
    if args.exclude_op:
        data["excluded_ops"] = list(data.get("excluded_ops") or []) + list(args.exclude_op)
    if args.dump_dir:
        data["dump_dir"] = args.dump_dir
    return ProviderConfig.from_dict(data)


def _cmd_partition(args: argparse.Namespace) -> int:
    provider = OffloadProvider(config=_config_from_args(args))
    model = onnx.load(args.onnx_model)
    clusters = provider.get_capability(model)

    if args.json:
        print(json.dumps([c.to_dict() for c in clusters], indent=2))
        return 0

    if not clusters:
        print("No offloadable clusters.")
        return 0
    for c in clusters:
        print(f"{c.name}: {len(c.node_ids)} node(s) [{c.node_ids[0]}..{c.node_ids[-1]}]")
        print(f"  inputs : {', '.join(c.runtime_inputs) or '-'}")
        print(f"  consts : {', '.join(c.constant_inputs) or '-'}")
        print(f"  outputs: {', '.join(c.outputs) or '-'}")
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    model = onnx.load(args.onnx_model)
    feeds = make_random_inputs(model, seed=args.seed)

    with OffloadSession(model, OffloadProvider(config=_config_from_args(args))) as sess:
        outs = sess.run(feeds)
        print(f"offloaded clusters: {len(sess.kernels)}, host fallbacks: {len(sess.host_clusters)}")

    for name, arr in outs.items():
        print(f"{name}: shape={tuple(arr.shape)} dtype={arr.dtype}")

    if args.check:
        ref = ReferenceEvaluator(model)
        ref_outs = dict(zip(ref.output_names, ref.run(None, feeds)))
        worst = 0.0
        for name, arr in outs.items():
            diff = float(np.max(np.abs(np.asarray(arr, dtype=np.float64) - np.asarray(ref_outs[name], dtype=np.float64)))) if arr.size else 0.0
            worst = max(worst, diff)
            print(f"{name}: max_abs_diff={diff:.3e}")
        if worst > args.eps:
            print(f"[error] outputs differ from reference (max_abs_diff={worst:.3e} > eps={args.eps})")
            return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Partition ONNX models for accelerator offload.")
    sub = ap.add_subparsers(dest="command", required=True)

    ap_part = sub.add_parser("partition", help="Print the offloadable clusters of a model")
    _add_common(ap_part)
    ap_part.add_argument("--json", action="store_true", help="Print capability records as JSON")
    ap_part.set_defaults(func=_cmd_partition)

    ap_run = sub.add_parser("run", help="Run a model with random inputs through the offload pipeline")
    _add_common(ap_run)
    ap_run.add_argument("--seed", type=int, default=0)
    ap_run.add_argument("--check", action="store_true", help="Compare with a whole-model reference evaluation")
    ap_run.add_argument("--eps", type=float, default=1e-4)
    ap_run.set_defaults(func=_cmd_run)

    args = ap.parse_args(argv)
    setup_logging(args.verbose, log_file=args.log_file)

    try:
        return int(args.func(args))
    except (OffloadError, ValueError, OSError) as e:
        LOGGER.debug("Command failed", exc_info=True)
        print(f"[error] {e}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
