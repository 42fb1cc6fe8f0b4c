#!/usr/bin/env python3
"""
Crispify Runtime - text-leveling engine over JSON-RPC on stdio

This runtime is a thin wrapper around one ModelSession:
- Delegates load/release to models/session.py
- Streams process_text fragments as stream.chunk notifications
- Reports telemetry and opt-in diagnostics on request
"""

import asyncio
import logging
import struct
import sys
import time
import uuid
from typing import Any, Dict, Optional

import msgpack
import orjson
import psutil

from . import __version__, validators
from .benchmark_utils import is_benchmark_mode
from .config_loader import Config, get_config
from .errors import ERROR_CODE_MAP, CrispifyRuntimeError, ErrorKind, ModelLoadError
from .models import llama_engine
from .models.cancellation import CancellationToken
from .models.engine import InferenceEngine
from .models.session import GenerationResult, ModelSession
from .models.streaming import stream_process_text

logger = logging.getLogger(__name__)

# Binary streaming message types
MSG_TYPE_TOKEN = 1  # stream.chunk
MSG_TYPE_STATS = 2  # stream.stats
MSG_TYPE_EVENT = 3  # stream.event

_METHOD_BY_TYPE = {
    MSG_TYPE_TOKEN: "stream.chunk",
    MSG_TYPE_STATS: "stream.stats",
    MSG_TYPE_EVENT: "stream.event",
}

CAPABILITIES = [
    "load_model",
    "process_text",
    "cancel_processing",
    "release_model",
    "is_model_loaded",
    "get_memory_usage",
    "runtime/telemetry",
    "runtime/diagnostics",
]


class RuntimeServer:
    """Python runtime exposing one ModelSession via JSON-RPC"""

    def __init__(self, engine: Optional[InferenceEngine] = None, config: Optional[Config] = None):
        self.config = config or get_config()
        if engine is None:
            engine = llama_engine.LlamaCppEngine(verbose=self.config.verbose, config=self.config)
        self.session = ModelSession(engine, self.config)
        self.telemetry = self.session.telemetry
        self.binary_mode: bool = self.config.use_messagepack
        self.shutdown_requested: bool = False
        self.stream_tasks: Dict[str, asyncio.Task] = {}
        self.stream_tokens: Dict[str, CancellationToken] = {}

    # ------------------------------------------------------------------
    # Wire output
    # ------------------------------------------------------------------

    def _notify(self, method: str, params: Dict[str, Any]) -> None:
        """Emit JSON-RPC notification to stdout"""
        payload = {"jsonrpc": "2.0", "method": method, "params": params}
        print(orjson.dumps(payload).decode("utf-8"), flush=True)

    def _notify_binary(self, msg_type: int, params: Dict[str, Any]) -> None:
        """
        Emit binary notification using MessagePack

        Message Format:
            [4 bytes: length (big-endian)] + [N bytes: msgpack {'t': type, 'p': params}]
        """
        try:
            packed = msgpack.packb({"t": msg_type, "p": params}, use_bin_type=True)
            sys.stdout.buffer.write(struct.pack(">I", len(packed)))
            sys.stdout.buffer.write(packed)
            sys.stdout.buffer.flush()
        except Exception as e:
            logger.warning(f"Binary notification failed, falling back to JSON: {e}")
            self._notify(_METHOD_BY_TYPE.get(msg_type, "stream.event"), params)

    def _emit(self, msg_type: int, params: Dict[str, Any]) -> None:
        if self.binary_mode:
            self._notify_binary(msg_type, params)
        else:
            self._notify(_METHOD_BY_TYPE[msg_type], params)

    def _serialize_error(self, exc: Exception) -> Dict[str, Any]:
        """Translate Python exceptions to JSON-RPC error objects"""
        if isinstance(exc, CrispifyRuntimeError):
            code = ERROR_CODE_MAP.get(type(exc), ERROR_CODE_MAP[CrispifyRuntimeError])
            return {
                "code": code,
                "message": exc.message,
                "data": {"model_path": exc.model_path, "kind": exc.kind.value},
            }
        elif isinstance(exc, ValueError):
            logger.info(f"Validation error: {exc}")
            return {
                "code": -32602,  # Invalid params
                "message": str(exc),
                "data": {"type": "ValidationError"},
            }
        else:
            # Generic message; the details only go to the log
            logger.error(f"Unexpected error in runtime: {type(exc).__name__}: {exc}")
            return {
                "code": -32099,
                "message": "An unexpected internal error occurred",
                "data": {"type": "InternalError"},
            }

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def handle_request(self, request: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Handle incoming JSON-RPC request or notification

        Returns:
            Response dict for requests (with id), None for notifications (without id)
        """
        method = request.get("method")
        params = request.get("params") or {}
        req_id = request.get("id")
        is_notification = "id" not in request

        try:
            if method == "runtime/info":
                result = await self.get_runtime_info()
            elif method == "runtime/state":
                result = await self.get_runtime_state()
            elif method == "runtime/telemetry":
                result = await self.get_telemetry_report()
            elif method == "runtime/diagnostics":
                result = await self.get_diagnostics(params)
            elif method == "load_model":
                result = await self.load_model(params)
            elif method == "process_text":
                result = await self.process_text(params)
            elif method == "cancel_processing":
                result = await self.cancel_processing(params)
            elif method == "release_model":
                result = await self.release_model()
            elif method == "is_model_loaded":
                result = {"loaded": self.session.is_model_loaded()}
            elif method == "get_memory_usage":
                result = {"bytes": self.session.get_memory_usage()}
            elif method == "shutdown":
                result = await self.shutdown()
            else:
                raise ValueError(f"Unknown method: {method}")

            if is_notification:
                return None
            return {"jsonrpc": "2.0", "id": req_id, "result": result}

        except Exception as exc:
            error_obj = self._serialize_error(exc)
            if is_notification:
                logger.warning(f"Error in notification {method}: {exc}")
                return None
            return {"jsonrpc": "2.0", "id": req_id, "error": error_obj}

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def get_runtime_info(self) -> Dict[str, Any]:
        """Return runtime version and capabilities"""
        if llama_engine.LLAMA_CPP_AVAILABLE:
            engine_version = getattr(llama_engine.llama_cpp, "__version__", "unknown")
        else:
            engine_version = llama_engine.LLAMA_CPP_IMPORT_ERROR or "unsupported"

        mem_info = psutil.Process().memory_info()
        return {
            "version": __version__,
            "llama_cpp_version": engine_version,
            "protocol": "json-rpc-2.0",
            "capabilities": list(CAPABILITIES),
            "engine_available": llama_engine.LLAMA_CPP_AVAILABLE,
            "binary_mode": self.binary_mode,
            "benchmark_mode": is_benchmark_mode(),
            "memory": {"rss": mem_info.rss, "vms": mem_info.vms},
        }

    async def get_runtime_state(self) -> Dict[str, Any]:
        """Return current session state for reconciliation"""
        return {
            "state": self.session.state.value,
            "model_loaded": self.session.is_model_loaded(),
            "model_path": self.session.model_path,
            "active_streams": len(self.stream_tasks),
        }

    async def get_telemetry_report(self) -> Dict[str, Any]:
        return self.telemetry.get_report()

    async def get_diagnostics(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Session snapshot plus stored diagnostics metrics

        Params:
            enabled: optional bool, opt in/out (opting out clears metrics)
            export: optional bool, include the human-readable report
        """
        recorder = self.session.diagnostics_recorder
        if "enabled" in params:
            enabled = params["enabled"]
            if not isinstance(enabled, bool):
                raise ValueError(f"enabled must be a boolean, got {type(enabled).__name__}")
            recorder.set_enabled(enabled)

        result: Dict[str, Any] = {
            "session": self.session.diagnostics(),
            **recorder.to_dict(),
        }
        if params.get("export"):
            result["export"] = recorder.export_text()
        return result

    # ------------------------------------------------------------------
    # Model lifecycle
    # ------------------------------------------------------------------

    async def load_model(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Load a GGUF model into the session (progress via model.progress notifications)"""
        model_path = validators.validate_model_path(params.get("model_path"))
        loop = asyncio.get_running_loop()

        def on_progress(value: float) -> None:
            loop.call_soon_threadsafe(
                self._notify, "model.progress", {"model_path": model_path, "progress": value}
            )

        started = time.perf_counter()
        loaded = await asyncio.to_thread(self.session.load_model, model_path, on_progress)
        if not loaded:
            reason = self.session.diagnostics().get("last_error") or f"session is {self.session.state.value}"
            raise ModelLoadError(model_path, reason)

        return {
            "model_path": self.session.model_path,
            "state": self.session.state.value,
            "memory_bytes": self.session.get_memory_usage(),
            "load_time_ms": (time.perf_counter() - started) * 1000.0,
        }

    async def release_model(self) -> Dict[str, Any]:
        await asyncio.to_thread(self.session.release_model)
        return {"success": True}

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def process_text(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Start streaming a leveled rewrite; returns the stream handshake immediately"""
        text = validators.validate_text_input(params.get("text"))

        stream_id = params.get("stream_id") or str(uuid.uuid4())
        if stream_id in self.stream_tasks:
            raise ValueError(f"Stream ID '{stream_id}' is already in use")

        token = CancellationToken()
        started_at = time.time()

        async def run_stream() -> None:
            result: Optional[GenerationResult] = None
            try:
                async for item in stream_process_text(self.session, text, token):
                    if item.is_final:
                        result = item.result
                        break
                    self._emit(MSG_TYPE_TOKEN, {
                        "stream_id": stream_id,
                        "token": item.fragment,
                        "is_final": False,
                    })
            except Exception as exc:
                logger.error(f"Stream {stream_id} failed: {exc}")
                self._emit(MSG_TYPE_EVENT, {
                    "stream_id": stream_id,
                    "event": "error",
                    "error_kind": ErrorKind.INFERENCE_FAILED.value,
                    "error": str(exc),
                    "is_final": True,
                })
            else:
                self._emit_completion(stream_id, result)
            finally:
                self.stream_tasks.pop(stream_id, None)
                self.stream_tokens.pop(stream_id, None)

        self.stream_tokens[stream_id] = token
        self.stream_tasks[stream_id] = asyncio.create_task(run_stream())
        return {"stream_id": stream_id, "started_at": started_at}

    def _emit_completion(self, stream_id: str, result: Optional[GenerationResult]) -> None:
        if result is None:
            self._emit(MSG_TYPE_EVENT, {
                "stream_id": stream_id,
                "event": "cancelled",
                "error_kind": ErrorKind.CANCELLED.value,
                "is_final": True,
            })
            return

        self._emit(MSG_TYPE_STATS, {
            "stream_id": stream_id,
            "tier": result.tier,
            **result.stats.to_dict(),
        })

        if result.ok:
            event = "completed"
        elif result.error_kind is ErrorKind.CANCELLED:
            event = "cancelled"
        else:
            event = "error"
        payload: Dict[str, Any] = {
            "stream_id": stream_id,
            "event": event,
            "error_kind": result.error_kind.value,
            "is_final": True,
        }
        if result.error_message:
            payload["error"] = result.error_message
        self._emit(MSG_TYPE_EVENT, payload)

    async def cancel_processing(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Cancel one stream (by stream_id) or whatever is generating"""
        stream_id = params.get("stream_id")
        if stream_id:
            token = self.stream_tokens.get(stream_id)
            if token is None:
                return {"success": False}
            token.cancel()
        else:
            self.session.cancel_processing()
        return {"success": True}

    async def shutdown(self) -> Dict[str, Any]:
        """Gracefully shutdown the runtime"""
        self.shutdown_requested = True

        for token in list(self.stream_tokens.values()):
            token.cancel()
        tasks = list(self.stream_tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.stream_tasks.clear()

        await asyncio.to_thread(self.session.release_model)
        logger.info(f"Final telemetry:\n{self.telemetry.get_stats_summary()}")
        return {"success": True}

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Main event loop reading from stdin"""
        buffer = ""
        max_buffer_size = self.config.max_buffer_size
        loop = asyncio.get_running_loop()

        while True:
            try:
                line = await loop.run_in_executor(None, sys.stdin.readline)
                if not line:
                    break

                # Check size before concatenation so the buffer never overflows
                line_bytes = len(line.encode("utf-8"))
                current_buffer_bytes = len(buffer.encode("utf-8"))
                if current_buffer_bytes + line_bytes > max_buffer_size:
                    msg_id = None
                    try:
                        msg_id = orjson.loads(buffer).get("id")
                    except (orjson.JSONDecodeError, ValueError, AttributeError):
                        pass
                    error_response = {
                        "jsonrpc": "2.0",
                        "id": msg_id,
                        "error": {
                            "code": -32600,  # Invalid Request
                            "message": f"Buffer overflow: would exceed {max_buffer_size} bytes",
                        },
                    }
                    print(orjson.dumps(error_response).decode("utf-8"), flush=True)
                    buffer = ""
                    continue

                buffer += line

                try:
                    request = orjson.loads(buffer)
                except orjson.JSONDecodeError:
                    # Incomplete message, keep reading
                    continue
                buffer = ""

                if not isinstance(request, dict):
                    raise ValueError("JSON-RPC request must be an object")

                response = await self.handle_request(request)
                if response is not None:
                    print(orjson.dumps(response).decode("utf-8"), flush=True)

                if self.shutdown_requested:
                    break

            except Exception as e:
                logger.error(f"Parse error in runtime loop: {type(e).__name__}: {e}")
                error_response = {
                    "jsonrpc": "2.0",
                    "id": None,
                    "error": {"code": -32700, "message": f"Parse error: {str(e)}"},
                }
                print(orjson.dumps(error_response).decode("utf-8"), flush=True)
                buffer = ""

        if not self.shutdown_requested:
            await self.shutdown()


def main() -> None:
    """Entry point"""
    config = get_config()
    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )
    config.validate()

    # Ready notice on stderr for the host process
    print("Crispify runtime ready", file=sys.stderr, flush=True)

    server = RuntimeServer(config=config)
    asyncio.run(server.run())


if __name__ == "__main__":
    main()
