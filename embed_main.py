import os
import sys
import logging
import argparse

import numpy as np

from cliptensors.config import EncoderConfig, config_from_dict, load_config
from cliptensors.data.image_decoders import IMAGE_BACKENDS, collect_image_paths
from cliptensors.data.text_tokens import TOKENIZER_BACKENDS
from cliptensors.errors import ClipTensorsError
from vl_backbones import load_clip_pack

logger = logging.getLogger("embed_main")


def arg_parser(argv=None):
    """Argument parser for CLIP embedding export."""
    parser = argparse.ArgumentParser(description="Encode images and texts with ONNX CLIP towers")
    parser.add_argument("--config", type=str, default=None, help="YAML file with encoder options")
    parser.add_argument("--visual_model", type=str, default=None, help="ONNX image encoder")
    parser.add_argument("--textual_model", type=str, default=None, help="ONNX text encoder")
    parser.add_argument("--images", type=str, nargs="*", default=[], help="Image files or directories")
    parser.add_argument("--texts", type=str, nargs="*", default=[], help="Texts to encode")
    parser.add_argument("--dtype", type=str, default=None, help="Image tensor type (float32, float16, int8); default: model input type")
    parser.add_argument("--image_backend", type=str, choices=sorted(IMAGE_BACKENDS), default=None)
    parser.add_argument("--tokenizer_backend", type=str, choices=sorted(TOKENIZER_BACKENDS), default=None)
    parser.add_argument("--decode_workers", type=int, default=None, help="Threads for image decoding (0 = sequential)")
    parser.add_argument("--no_normalize", action="store_true", help="Keep raw (non L2-normalized) embeddings")
    parser.add_argument("--out", type=str, default="embeddings", help="Output prefix for .npy files")
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args(argv)


def build_config(args) -> EncoderConfig:
    overrides = {
        "visual_model": args.visual_model,
        "textual_model": args.textual_model,
        "dtype": args.dtype,
        "image_backend": args.image_backend,
        "tokenizer_backend": args.tokenizer_backend,
        "decode_workers": args.decode_workers,
    }
    if args.config:
        return load_config(args.config, **overrides)
    return config_from_dict({k: v for k, v in overrides.items() if v is not None})


def main(argv=None):
    args = arg_parser(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if not args.images and not args.texts:
        logger.error("Nothing to encode: pass --images and/or --texts")
        return 2

    try:
        config = build_config(args)
        pack = load_clip_pack(config)

        image_emb = text_emb = None
        if args.images:
            paths = [p for root in args.images for p in collect_image_paths(root)]
            image_emb = pack.encode_image(paths, normalize=not args.no_normalize)
            out = f"{args.out}_image.npy"
            np.save(out, image_emb)
            logger.info("Saved %s image embeddings %s -> %s", len(paths), image_emb.shape, out)

        if args.texts:
            text_emb = pack.encode_text(args.texts, normalize=not args.no_normalize)
            out = f"{args.out}_text.npy"
            np.save(out, text_emb)
            logger.info("Saved %s text embeddings %s -> %s", len(args.texts), text_emb.shape, out)
    except (ClipTensorsError, FileNotFoundError, ValueError) as e:
        logger.error("%s", e)
        return 1

    if image_emb is not None and text_emb is not None and image_emb.size and text_emb.size:
        sims = pack.similarity(image_emb, text_emb)
        for path, row in zip(paths, sims):
            best = int(np.argmax(row))
            logger.info("%s -> %r (%.3f)", os.path.basename(path), args.texts[best], row[best])
    return 0


if __name__ == "__main__":
    sys.exit(main())
