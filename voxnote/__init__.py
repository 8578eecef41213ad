# voxnote/__init__.py
import os
import platform

# Extra CUDA runtime folders for faster-whisper on Windows, separated by os.pathsep
_CUDA_BINS = [p for p in os.getenv("VOXNOTE_CUDA_BINS", "").split(os.pathsep) if p]

if platform.system() == "Windows":
    for p in _CUDA_BINS:
        if os.path.isdir(p):
            try:
                os.add_dll_directory(p)
            except OSError:
                pass
