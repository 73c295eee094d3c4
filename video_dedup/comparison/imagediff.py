from PIL import Image, ImageChops

from .. import config


class ImageDifferencer:
    """
    Normalized difference between two images, in [0, 1].

    Both images are scaled down to a small grayscale grid; the score is the
    fraction of grid cells whose brightness differs by more than the pixel
    threshold. Cheap, and tolerant of re-encodes and resolution changes.
    """

    def __init__(self, size: int = config.DIFF_SIZE, pixel_threshold: int = config.PIXEL_DIFF_THRESHOLD):
        self.size = size
        self.pixel_threshold = pixel_threshold

    def difference(self, image_a: Image.Image, image_b: Image.Image) -> float:
        a = self._normalize(image_a)
        b = self._normalize(image_b)
        histogram = ImageChops.difference(a, b).histogram()
        different = sum(histogram[self.pixel_threshold + 1:])
        return different / (self.size * self.size)

    def _normalize(self, image: Image.Image) -> Image.Image:
        return image.convert("L").resize((self.size, self.size), Image.Resampling.BILINEAR)
