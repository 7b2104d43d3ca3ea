# camstages

Post-processing stages for camera frames and neural network outputs. They
work on plain byte buffers, sequences of numbers and NumPy arrays. Stage
settings are read from ordinary dictionaries, such as ones loaded from a
JSON file, through `from_params` class methods.

## Installation

```
pip install camstages
```

To run the tests:

```
pip install "camstages[test]"
pytest
```

## Modules

- `camstages.geometry`: integer `Point`, `Size` and `Rectangle` types.
  `Rectangle` has `bounded_to`, `enclosed_in`, `translated_by` and
  `scaled_by`. The module also has `convert_inference_coordinates`, which
  maps normalised `(x, y, w, h)` network coordinates through the sensor
  crop to output-image pixels, and `inference_roi_auto`, which gives the
  centred sensor region with a given aspect ratio.
- `camstages.motion`: `MotionDetector` and `MotionDetectConfig`. The
  detector compares a region of interest in successive low-resolution Y
  planes, with optional horizontal and vertical subsampling. It reports
  motion when enough pixels have changed by more than
  `difference_m * old + difference_c`.
- `camstages.negate`: `negate(buffer)` returns the buffer with every bit
  inverted. The buffer length must be a multiple of four bytes.
- `camstages.detection`:
  - `Detection`, one detected object with its class, label, confidence and box.
  - `TemporalFilter` and `TemporalFilterConfig`. The filter smooths boxes
    over frames, hides objects that have only just appeared and holds on to
    objects that briefly disappear.
  - `scaler_crops_from_metadata` and `convert_scaler_crop_coordinates`.
  - `translate_detections`, which turns raw `(class_id, label, confidence,
    bbox)` tuples into `Detection` objects in output coordinates.
- `camstages.imx500`: handling of an on-sensor accelerator's output.
  - `ObjectDetection` and `ObjectDetectionConfig` decode object-detection
    output tensors; `parse_object_detection_tensor` returns an
    `ObjectDetectionOutput`.
  - `normalize_input_tensor` and `InputTensorSaver` undo the sensor's input
    normalisation and write input tensors to a binary stream.
  - `conv_reg_signed` interprets a signed register value.
  - `parse_fw_progress` reads firmware upload progress text.
- `camstages.object_detect`: `ObjectDetector` maps the boxes of a 300x300
  detection network to main-stream pixels and merges overlapping boxes of
  the same class. `read_detect_labels` and `check_output_dims` support it.
- `camstages.classify`: `ObjectClassifier` keeps the top-N classes of a
  quantised classifier output, using a high and a low confidence threshold
  for hysteresis, and builds an annotation string. `read_labels_file` pads
  the labels to a multiple of 16.
- `camstages.posenet_decode`: multi-person pose decoding from heatmaps and
  short- and mid-range offset fields. Its entry point is `decode_all_poses`,
  which is built on `build_keypoint_queue`, `backtrack_decode_pose` and
  `soft_keypoint_nms`.
- `camstages.posenet`: `PoseNet` and `PoseNetConfig`. They split a flat
  output tensor, decode the poses, map the keypoints to output pixels and
  optionally filter poses over time.
- `camstages.pose`: single-person pose decoding. `interpret_pose_outputs`
  works from a 9x9x17 heatmap and its offsets; `check_pose_output_dims`
  checks the heatmap shape.

## Example: motion detection

```python
from camstages.motion import MotionDetectConfig, MotionDetector

config = MotionDetectConfig.from_params({"region_threshold": 0.01, "frame_period": 1})
detector = MotionDetector(config)
detector.configure(width=128, height=96, stride=128)

for sequence, frame in enumerate(frames):  # frames: bytes of the Y plane
    if detector.process(frame, sequence):
        print("motion at frame", sequence)
```

`process` returns `None` for frames skipped by `frame_period`. For all
other frames it returns whether motion was seen. The first checked frame
only records a reference.

## Example: object detection tensors

```python
from camstages.geometry import Rectangle, Size
from camstages.imx500 import ObjectDetection, ObjectDetectionConfig

config = ObjectDetectionConfig.from_params(
    {"max_detections": 5, "threshold": 0.55, "classes": ["person", "bicycle", "car"],
     "temporal_filter": {"tolerance": 0.1}}
)
stage = ObjectDetection(config, isp_output_size=Size(1920, 1080), sensor_output_size=Size(2028, 1520))

detections = stage.process(output_tensor, num_tensors=4, tensor_data_num=4 * 10,
                           scaler_crop=Rectangle(0, 0, 4056, 3040))
for d in detections:
    print(d)
```

If `output_tensor` is `None`, `process` returns the results of the last
frame that had one.

## What the package does not do

camstages does not talk to cameras, sensors or accelerators, and it does
not run neural networks. You pass it the frame buffers and output tensors
and get back results as Python objects. It does not draw boxes, labels or
skeletons onto images. It does not combine several exposures into one
high-dynamic-range frame.