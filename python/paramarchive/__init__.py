from paramarchive.adapters import FileAdapter, ReadAdapter, StreamAdapter
from paramarchive.compilation import (
    CompilationUnit,
    register_custom_class,
    unregister_custom_class,
)
from paramarchive.container import ContainerReader
from paramarchive.deserializer import ArchiveDeserializer
from paramarchive.errors import (
    ArchiveError,
    AttributeConflict,
    ContainerOpenFailure,
    LoadError,
    MalformedRecord,
    PayloadShapeMismatch,
    RecordNotFound,
    TypeResolutionFailure,
)
from paramarchive.loader import LoadObserver, LoggingObserver, load_module, load_parameters
from paramarchive.objects import Module, Object
from paramarchive.settings import LoadSettings
from paramarchive.unpickler import Tensor
