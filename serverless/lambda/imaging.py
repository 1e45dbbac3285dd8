# Resize backends for the resize Lambda

import logging
import shutil
import subprocess
from collections import namedtuple

from PIL import Image

logger = logging.getLogger(__name__)

# size is (width, height) when the backend knows it, otherwise None
ResizeResult = namedtuple("ResizeResult", ["output", "size", "stdout", "stderr"])


class ResizeError(RuntimeError):
    def __init__(self, message, returncode=None, stdout="", stderr=""):
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class ImageMagickResizer:
    """Shrink with ImageMagick's `convert SRC -resize WxH> DST`.

    The `>` flag only shrinks images larger than the box and keeps the
    aspect ratio. stdout and stderr are captured and returned (or attached to
    the ResizeError) for diagnostics.
    """

    def __init__(self, binary="convert"):
        self.binary = binary

    def command(self, src, dst, max_width, max_height):
        return [self.binary, src, "-resize", f"{max_width}x{max_height}>", dst]

    def resize(self, src, dst, max_width, max_height):
        cmd = self.command(src, dst, max_width, max_height)
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise ResizeError(f"cannot run {self.binary}: {e}") from e
        if proc.returncode != 0:
            logger.error(f"{self.binary} exited with {proc.returncode}: {proc.stderr.strip()}")
            raise ResizeError(
                f"{self.binary} exited with {proc.returncode}",
                returncode=proc.returncode,
                stdout=proc.stdout,
                stderr=proc.stderr,
            )
        return ResizeResult(dst, None, proc.stdout, proc.stderr)


class PillowResizer:
    """In-process bounding-box shrink with Pillow."""

    def resize(self, src, dst, max_width, max_height):
        try:
            with Image.open(src) as img:
                width, height = img.size
                if width <= max_width and height <= max_height:
                    # already fits: keep the original bytes
                    shutil.copyfile(src, dst)
                    return ResizeResult(dst, (width, height), "", "")
                fmt = img.format
                img.thumbnail((max_width, max_height))
                if fmt == "JPEG" and img.mode not in ("RGB", "L", "CMYK"):
                    img = img.convert("RGB")
                img.save(dst, format=fmt)
                return ResizeResult(dst, img.size, "", "")
        except (OSError, KeyError, ValueError, Image.DecompressionBombError) as e:
            # KeyError: format can be read but not written
            raise ResizeError(f"cannot resize {src}: {e}") from e


_BACKENDS = {
    "imagemagick": lambda convert_bin: ImageMagickResizer(convert_bin),
    "pillow": lambda convert_bin: PillowResizer(),
}


def get_resizer(name="imagemagick", convert_bin="convert"):
    try:
        factory = _BACKENDS[name.strip().lower()]
    except KeyError:
        raise ValueError(f"unknown resize backend: {name!r}") from None
    return factory(convert_bin)
