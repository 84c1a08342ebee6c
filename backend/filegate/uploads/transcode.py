"""Image transcoders applied on the upload write path.

Transcoders are keyed by the extension they produce. Each one reads a
complete seekable source, re-encodes its pixel data and writes the result,
so the stored bytes are always produced by the encoder and never copied
from the upload.

HEIF/HEIC decoding is provided by pillow-heif, registered as a Pillow
plugin at import time.
"""
from typing import BinaryIO, Callable, Dict

from PIL import Image, ImageOps
from pillow_heif import register_heif_opener

register_heif_opener()

JPEG_QUALITY = 90

Transcoder = Callable[[BinaryIO, BinaryIO], None]


def _convert_to_rgb(img: Image.Image) -> Image.Image:
    """Flatten *img* to RGB, compositing transparency onto white."""
    if img.mode == "RGB":
        return img

    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        img = img.convert("RGBA")
        background = Image.new("RGB", img.size, (255, 255, 255))
        background.paste(img, mask=img.split()[-1])
        return background

    # All other modes (L, P, CMYK, I;16, ...)
    return img.convert("RGB")


def transcode_to_jpeg(source: BinaryIO, destination: BinaryIO) -> None:
    """Decode *source* and write it to *destination* as a baseline JPEG.

    The EXIF orientation tag is applied to the pixels, so the output
    needs no rotation metadata.

    Raises:
        PIL.UnidentifiedImageError: *source* is not a decodable image.
        OSError: decoding or writing failed.
    """
    with Image.open(source) as img:
        img.load()
        upright = ImageOps.exif_transpose(img)
        rgb = _convert_to_rgb(upright)
        rgb.save(destination, format="JPEG", quality=JPEG_QUALITY)


# Exceptions a decoder or encoder may raise on corrupt input
TRANSCODE_ERRORS = (
    OSError,
    ValueError,
    SyntaxError,
    RuntimeError,
    Image.DecompressionBombError,
)


TRANSCODERS: Dict[str, Transcoder] = {
    ".jpg": transcode_to_jpeg,
}
