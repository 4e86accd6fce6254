from dbagent.core.models import Command, DatabaseKind, Operation, TransferResponse

__version__ = "0.1.0"

__all__ = [
	"Command",
	"DatabaseKind",
	"Operation",
	"TransferResponse",
	"__version__",
]
