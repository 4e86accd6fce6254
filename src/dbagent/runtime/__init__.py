"""Process lifecycle, monitoring and upload orchestration."""

from dbagent.runtime.controller import AgentController, AgentPhase, ControllerState
from dbagent.runtime.monitor import MonitoringLoop, ProcessSampler
from dbagent.runtime.process_runner import ProcessHandle, ProcessRunner, start_process, stop_process
from dbagent.runtime.rpc import TransferServer, parse_listen_address, send_transfer
from dbagent.runtime.uploads import UploadPipeline, UploadPlan, UploadReport, destination_name

__all__ = [
	"AgentController",
	"AgentPhase",
	"ControllerState",
	"MonitoringLoop",
	"ProcessHandle",
	"ProcessRunner",
	"ProcessSampler",
	"TransferServer",
	"UploadPipeline",
	"UploadPlan",
	"UploadReport",
	"destination_name",
	"parse_listen_address",
	"send_transfer",
	"start_process",
	"stop_process",
]
