#!/usr/bin/env python3

import argparse
import logging
import os
import random
import shlex
import shutil
import string
import subprocess
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, TypedDict
from urllib.parse import urlsplit

DEFAULT_STAGING_DIR = "/tmp/data"
PRESIGN_EXPIRES_IN = 21600

INPUT_FLAG = "-i"
SEGMENT_FLAG = "-hls_segment_filename"
VARIANT_PLACEHOLDER = "%v"
OBJECT_STORE_PREFIX = "s3://"
FLAG_PREFIX = "-"

JOB_ID_LENGTH = 8
_JOB_ID_ALPHABET = string.ascii_lowercase + string.digits
MAX_MOVE_WORKERS = 8

VERBOSE_LEVEL = 0


class JobError(RuntimeError):
    pass


class InputError(JobError):
    pass


class MissingCommandError(InputError):
    pass


class CommandSyntaxError(InputError):
    pass


class MissingInputError(InputError):
    pass


class MissingOutputError(InputError):
    pass


class PresignError(JobError):
    def __init__(self, token: str, detail: str) -> None:
        super().__init__(f"failed to generate signed URL for {token}: {detail}")
        self.token = token
        self.detail = detail


class TranscodeError(JobError):
    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class ReconcileError(JobError):
    pass


class OutputNotFoundError(ReconcileError):
    pass


class UnsupportedDestinationError(ReconcileError):
    pass


class UploadError(ReconcileError):
    pass


class StagingError(JobError):
    pass


@dataclass(frozen=True)
class StorageConfig:
    """How to reach the object store through the ``aws`` CLI.

    ``endpoint_url`` is forwarded as ``--endpoint-url`` to every invocation
    when set, which is how S3-compatible stores (MinIO, R2, ...) are targeted.
    """

    endpoint_url: Optional[str] = None
    executable: str = "aws"


class Location(TypedDict):
    scheme: str
    path: str
    literal: str


class Classification(TypedDict):
    input_index: int
    output_index: int
    segment_index: Optional[int]


class Resolution(TypedDict):
    source: str
    replacements: List[Tuple[str, str]]
    segment_literal: Optional[str]
    segment_pattern: Optional[str]
    local_output: str


class RewriteResult(TypedDict):
    source: str
    dest: str
    command: str
    args: List[str]
    segment_literal: Optional[str]
    segment_pattern: Optional[str]


def _print_command(cmd: Sequence[str]) -> None:
    if not VERBOSE_LEVEL:
        return
    cmdline = " ".join(shlex.quote(str(part)) for part in cmd)
    print("+ " + cmdline, file=sys.stderr)


def _decode(data: Optional[bytes]) -> str:
    if not data:
        return ""
    return data.decode("utf-8", "replace").strip()


def split_args(command: str) -> List[str]:
    if not command or not command.strip():
        return []
    try:
        return shlex.split(command)
    except ValueError as exc:
        raise CommandSyntaxError(f"malformed command string: {exc}") from exc


def is_object_store(text: str) -> bool:
    return text.startswith(OBJECT_STORE_PREFIX)


def parse_location(text: str) -> Location:
    parts = urlsplit(text)
    scheme = parts.scheme.lower()
    if not scheme:
        return {"scheme": "file", "path": text, "literal": text}
    if scheme == "file":
        return {"scheme": "file", "path": parts.path, "literal": text}
    return {"scheme": scheme, "path": parts.path, "literal": text}


def _path_tail(text: str) -> str:
    return text.rsplit("/", 1)[-1]


def is_directory_style(text: str) -> bool:
    return text.endswith("/")


def find_segment_pattern(args: Sequence[str]) -> Optional[int]:
    for i in range(1, len(args)):
        if args[i - 1] == SEGMENT_FLAG and is_object_store(args[i]):
            return i
    return None


def classify_args(args: Sequence[str]) -> Classification:
    input_index: Optional[int] = None
    for i, arg in enumerate(args):
        if arg == INPUT_FLAG and i + 1 < len(args):
            input_index = i + 1
            break
    if input_index is None:
        raise MissingInputError("no input specified")

    output_index: Optional[int] = None
    for i in range(len(args) - 1, -1, -1):
        if not args[i].startswith(FLAG_PREFIX):
            output_index = i
            break
    if output_index is None:
        raise MissingOutputError("no output specified")

    return {
        "input_index": input_index,
        "output_index": output_index,
        "segment_index": find_segment_pattern(args),
    }


def presign(
    url: str, storage: StorageConfig, expires_in: int = PRESIGN_EXPIRES_IN
) -> str:
    logging.info("generating signed URL for %s", url)
    try:
        p = _aws(["presign", url, "--expires-in", str(expires_in)], storage)
    except OSError as exc:
        logging.error("failed to run %s: %s", storage.executable, exc)
        raise PresignError(url, str(exc)) from exc
    if p.returncode != 0:
        detail = _decode(p.stderr) or f"exit code {p.returncode}"
        logging.error("failed to generate signed URL for %s: %s", url, detail)
        raise PresignError(url, detail)
    signed = _decode(p.stdout)
    if not signed:
        raise PresignError(url, "empty response")
    return signed


def staged_path(literal: str) -> str:
    """Local path, relative to the staging directory, for a staged remote token.

    Tokens carrying the variant placeholder keep their variant directory
    (``stream_%v/segment_%03d.ts``); everything else keeps only its filename.
    """
    if VARIANT_PLACEHOLDER in literal:
        segments = [seg for seg in parse_location(literal)["path"].split("/") if seg]
        if segments:
            return "/".join(segments[-2:])
    return _path_tail(literal) or "output"


def resolve_args(
    args: Sequence[str],
    classification: Classification,
    staging_dir: str,
    storage: StorageConfig,
) -> Resolution:
    resolved: Dict[str, str] = {}
    replacements: List[Tuple[str, str]] = []

    def record(literal: str, value: str) -> None:
        if literal in resolved:
            return
        resolved[literal] = value
        replacements.append((literal, value))

    input_arg = args[classification["input_index"]]
    output_arg = args[classification["output_index"]]

    source = input_arg
    if is_object_store(input_arg):
        source = presign(input_arg, storage)
        record(input_arg, source)

    # segment pattern decides how every other remote token is handled
    segment_literal: Optional[str] = None
    segment_pattern: Optional[str] = None
    if classification["segment_index"] is not None:
        segment_literal = args[classification["segment_index"]]
        segment_pattern = staged_path(segment_literal)
        record(segment_literal, segment_pattern)

    for arg in args:
        if arg in resolved or not is_object_store(arg):
            continue
        if arg == output_arg:
            continue
        if segment_pattern is not None:
            record(arg, staged_path(arg))
            continue
        record(arg, presign(arg, storage))

    if segment_pattern is not None and is_object_store(output_arg):
        local_name = resolved.get(output_arg) or staged_path(output_arg)
    else:
        local_name = _path_tail(output_arg)

    return {
        "source": source,
        "replacements": replacements,
        "segment_literal": segment_literal,
        "segment_pattern": segment_pattern,
        "local_output": os.path.join(staging_dir, local_name),
    }


def rewrite_command(
    command: str,
    replacements: Sequence[Tuple[str, str]],
    output: str,
    local_output: str,
) -> str:
    actual = command
    # longest literal first so a key never clobbers a longer key containing it
    for literal, value in sorted(replacements, key=lambda kv: len(kv[0]), reverse=True):
        actual = actual.replace(literal, value, 1)
    head, sep, tail = actual.rpartition(output)
    if sep:
        # already inside quotes in the original string
        if head.endswith(("'", '"')):
            actual = head + local_output + tail
        else:
            actual = head + shlex.quote(local_output) + tail
    return actual


def rewrite_args(
    args: Sequence[str],
    replacements: Sequence[Tuple[str, str]],
    output_index: int,
    local_output: str,
) -> List[str]:
    """Argument list handed to ffmpeg, rewritten token by token.

    Every token equal to a resolved literal gets that literal's resolution,
    and the output position gets the staging path, so nothing depends on
    re-splitting the rewritten string.
    """
    table = dict(replacements)
    actual = [table.get(arg, arg) for arg in args]
    actual[output_index] = local_output
    return actual


def rewrite_cmd_string(
    command: str, staging_dir: str, storage: StorageConfig
) -> RewriteResult:
    args = split_args(command)
    classification = classify_args(args)
    resolution = resolve_args(args, classification, staging_dir, storage)
    output = args[classification["output_index"]]
    actual = rewrite_command(
        command, resolution["replacements"], output, resolution["local_output"]
    )
    return {
        "source": resolution["source"],
        "dest": output,
        "command": actual,
        "args": rewrite_args(
            args,
            resolution["replacements"],
            classification["output_index"],
            resolution["local_output"],
        ),
        "segment_literal": resolution["segment_literal"],
        "segment_pattern": resolution["segment_pattern"],
    }


def _new_job_id() -> str:
    # non-cryptographic; only needs to avoid collisions between local jobs
    return "".join(random.choices(_JOB_ID_ALPHABET, k=JOB_ID_LENGTH))


def prepare(staging_root: str = DEFAULT_STAGING_DIR) -> str:
    try:
        os.makedirs(staging_root, exist_ok=True)
    except OSError as exc:
        raise StagingError(f"failed to create staging root {staging_root}: {exc}") from exc
    while True:
        job_dir = os.path.join(staging_root, _new_job_id())
        try:
            os.mkdir(job_dir)
        except FileExistsError:
            continue
        except OSError as exc:
            raise StagingError(f"failed to create job directory {job_dir}: {exc}") from exc
        return job_dir


def run_ffmpeg(
    args: Sequence[str], staging_dir: str, executable: str = "ffmpeg"
) -> None:
    cmd = [executable] + list(args)
    _print_command(cmd)
    try:
        p = subprocess.run(cmd, cwd=staging_dir, stderr=subprocess.PIPE, check=False)
    except OSError as exc:
        logging.error("failed to start %s: %s", executable, exc)
        raise TranscodeError(f"failed to start {executable}: {exc}") from exc
    if p.returncode != 0:
        diagnostics = _decode(p.stderr)
        logging.error("%s failed with exit code %d", executable, p.returncode)
        if diagnostics:
            logging.error("%s", diagnostics)
        raise TranscodeError(
            f"{executable} failed with exit code {p.returncode}",
            returncode=p.returncode,
            stderr=diagnostics,
        )


def _aws(args: Sequence[str], storage: StorageConfig) -> subprocess.CompletedProcess:
    cmd = [storage.executable, "s3"]
    if storage.endpoint_url:
        cmd += ["--endpoint-url", storage.endpoint_url]
    cmd += list(args)
    _print_command(cmd)
    return subprocess.run(
        cmd,
        check=False,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )


def _upload(args: Sequence[str], storage: StorageConfig, what: str) -> None:
    try:
        p = _aws(args, storage)
    except OSError as exc:
        raise UploadError(f"{what} failed: {exc}") from exc
    if p.returncode != 0:
        detail = _decode(p.stderr)
        if detail:
            logging.error("%s", detail)
        raise UploadError(f"{what} failed: {detail or f'exit code {p.returncode}'}")


def sync_base_prefix(segment_literal: str) -> str:
    base = segment_literal[: segment_literal.rfind("/") + 1]
    if VARIANT_PLACEHOLDER in segment_literal and urlsplit(base).path.strip("/"):
        base = base[: base.rfind("/", 0, len(base) - 1) + 1]
    return base


def check_destination(dest: str) -> Location:
    loc = parse_location(dest)
    if loc["scheme"] not in ("file", "s3"):
        raise UnsupportedDestinationError(
            f"unsupported protocol for upload: {loc['scheme']}:"
        )
    return loc


def _list_staged(staging_dir: str) -> List[str]:
    try:
        return sorted(os.listdir(staging_dir))
    except OSError as exc:
        raise ReconcileError(f"failed to list staging directory {staging_dir}: {exc}") from exc


def _makedirs(path: str) -> None:
    try:
        os.makedirs(path, exist_ok=True)
    except OSError as exc:
        raise ReconcileError(f"failed to create {path}: {exc}") from exc


def _find_staged_file(staging_dir: str, name: str) -> str:
    if name and name in _list_staged(staging_dir):
        return os.path.join(staging_dir, name)
    raise OutputNotFoundError(f"output file {name} not found in staging directory")


def _move(src: str, dest: str) -> str:
    try:
        return shutil.move(src, dest)
    except OSError as exc:
        raise ReconcileError(f"failed to move {src} to {dest}: {exc}") from exc


def _move_all(staging_dir: str, dest_dir: str) -> List[str]:
    names = _list_staged(staging_dir)
    if not names:
        logging.warning("staging directory %s is empty; nothing to move", staging_dir)
        return []
    workers = min(MAX_MOVE_WORKERS, len(names))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futs = [
            pool.submit(_move, os.path.join(staging_dir, n), os.path.join(dest_dir, n))
            for n in names
        ]
        return [fut.result() for fut in futs]


def upload_result(
    dest: str,
    staging_dir: str,
    storage: StorageConfig,
    segment_literal: Optional[str] = None,
) -> None:
    loc = check_destination(dest)

    if segment_literal and loc["scheme"] == "s3":
        prefix = sync_base_prefix(segment_literal)
        logging.info("syncing segmented output to %s", prefix)
        _upload(["sync", staging_dir.rstrip("/") + "/", prefix], storage, "segment sync")
        logging.info("synced segmented output to %s", prefix)
        return

    if loc["scheme"] == "file":
        target = loc["path"]
        if is_directory_style(target):
            _makedirs(target)
            moved = _move_all(staging_dir, target)
            logging.info("moved %d staged file(s) to %s", len(moved), target)
            return
        src = _find_staged_file(staging_dir, _path_tail(target))
        parent = os.path.dirname(target)
        if parent:
            _makedirs(parent)
        _move(src, target)
        logging.info("moved output to %s", target)
        return

    if is_directory_style(dest):
        _upload(["cp", "--recursive", staging_dir, dest], storage, "upload")
        logging.info("uploaded package to %s", dest)
        return
    src = _find_staged_file(staging_dir, _path_tail(loc["path"]))
    _upload(["cp", src, dest], storage, "upload")
    logging.info("uploaded %s", dest)


def run_job(
    command: str,
    staging_dir: str = DEFAULT_STAGING_DIR,
    ffmpeg_executable: str = "ffmpeg",
    storage: Optional[StorageConfig] = None,
    cleanup: bool = False,
) -> str:
    if not command or not command.strip():
        raise MissingCommandError("no ffmpeg command string provided")
    storage = storage or StorageConfig()

    # input errors surface before anything touches the staging root
    args = split_args(command)
    classification = classify_args(args)
    check_destination(args[classification["output_index"]])

    job_dir = prepare(staging_dir)
    result = rewrite_cmd_string(command, job_dir, storage)
    logging.info("output: %s", result["dest"])
    logging.info("staging: %s", job_dir)
    logging.debug("actual command string: %s", result["command"])

    run_ffmpeg(result["args"], job_dir, ffmpeg_executable)
    upload_result(result["dest"], job_dir, storage, result["segment_literal"])

    if cleanup:
        shutil.rmtree(job_dir, ignore_errors=True)
    return job_dir


def main(argv: Optional[Sequence[str]] = None) -> None:
    ap = argparse.ArgumentParser(
        description="Run an ffmpeg command whose input/output may live in S3. "
        "Remote inputs are presigned, outputs are staged locally and then uploaded."
    )
    ap.add_argument(
        "args",
        nargs="*",
        help="ffmpeg arguments (after '--'), or a single quoted command string.",
    )
    ap.add_argument(
        "--cmd",
        default=os.getenv("FFMPEG_CMD"),
        help="ffmpeg command string (without the executable).",
    )
    ap.add_argument(
        "--staging-dir",
        default=os.getenv("STAGING_DIR", DEFAULT_STAGING_DIR),
        help="Root under which a fresh per-job directory is created.",
    )
    ap.add_argument(
        "--ffmpeg",
        default=os.getenv("FFMPEG_EXECUTABLE", "ffmpeg"),
        help="ffmpeg executable.",
    )
    ap.add_argument(
        "--aws",
        default=os.getenv("AWS_EXECUTABLE", "aws"),
        help="aws CLI executable used for presign, cp and sync.",
    )
    ap.add_argument(
        "--endpoint-url",
        default=os.getenv("S3_ENDPOINT_URL") or None,
        help="Custom S3 endpoint forwarded to every aws invocation.",
    )
    ap.add_argument(
        "--cleanup",
        action="store_true",
        help="Remove the job staging directory after a successful upload.",
    )
    ap.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v, -vv).",
    )
    args = ap.parse_args(argv)

    level = (
        logging.WARNING
        if args.verbose == 0
        else (logging.INFO if args.verbose == 1 else logging.DEBUG)
    )
    global VERBOSE_LEVEL
    VERBOSE_LEVEL = args.verbose
    logging.basicConfig(
        level=level, stream=sys.stderr, format="%(levelname)s: %(message)s"
    )

    if len(args.args) == 1:
        command = args.args[0]
    elif args.args:
        command = shlex.join(args.args)
    else:
        command = args.cmd or ""

    storage = StorageConfig(endpoint_url=args.endpoint_url, executable=args.aws)
    try:
        job_dir = run_job(
            command,
            staging_dir=args.staging_dir,
            ffmpeg_executable=args.ffmpeg,
            storage=storage,
            cleanup=args.cleanup,
        )
    except InputError as exc:
        logging.error("%s", exc)
        sys.exit(2)
    except JobError as exc:
        logging.error("%s", exc)
        sys.exit(1)
    logging.info("job complete: %s", job_dir)


if __name__ == "__main__":
    main()
