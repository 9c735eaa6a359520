"""
Epoch Drivers
==============

- Trainer:           fixed-length clips, batched, gradient accumulation over
                     computational sub-batches
- SequentialTrainer: whole videos streamed through the model one chunk at a
                     time (batch size 1), resetting the model between videos

Both collect last-step predictions over an epoch and report mean average
precision.
"""

import os
import time
import torch
from tqdm import tqdm

from .data_source import END_OF_SEQUENCE
from .evaluator import compute_mean_average_precision
from .image_util import augment_sequence
from .training_utils import epoch_learning_rate, save_checkpoint


class Trainer:
    """
    Args:
        model: Maps (steps, batch, C, H, W) to (steps, batch, num_labels) or
            (batch, num_labels).
        criterion: Multi-label loss, e.g. nn.BCEWithLogitsLoss().
        train_data_loader / val_data_loader: shared.data_loader.DataLoader
        pixel_mean: Per-channel mean subtracted from every frame.
        batch_size: Examples per optimizer step.
        crop_size: int or (height, width).
        learning_rates: [{"start_epoch", "learning_rate"}, ...]
        num_labels: Output size of the model.
        computational_batch_size: Examples per forward/backward; gradients of
            the chunks accumulate before the step. Defaults to batch_size.
        momentum, weight_decay: SGD settings.
        input_dimension_permutation: Dim order handed to the model, relative
            to (steps, batch, C, H, W). E.g. (1, 2, 0, 3, 4) gives
            (batch, C, steps, H, W). Ignored when it is the identity.
        optimizer_state: Optional state dict to resume the optimizer from.
        device: Torch device for model inputs.
    """

    def __init__(self, model, criterion, train_data_loader, val_data_loader,
                 pixel_mean, batch_size, crop_size, learning_rates, num_labels,
                 computational_batch_size=None, momentum=0.9, weight_decay=5e-4,
                 input_dimension_permutation=None, optimizer_state=None,
                 device="cpu"):
        self.model = model
        self.criterion = criterion
        self.train_data_loader = train_data_loader
        self.val_data_loader = val_data_loader

        self.input_dimension_permutation = None
        if input_dimension_permutation is not None and \
                list(input_dimension_permutation) != list(range(len(input_dimension_permutation))):
            self.input_dimension_permutation = tuple(input_dimension_permutation)

        self.pixel_mean = list(pixel_mean)
        self.batch_size = batch_size
        self.computational_batch_size = computational_batch_size or batch_size
        if isinstance(crop_size, int):
            crop_size = (crop_size, crop_size)
        self.crop_size = tuple(crop_size)
        self.num_labels = num_labels
        self.weight_decay = weight_decay
        self.learning_rates = learning_rates
        self.device = torch.device(device)

        self.epoch_base_learning_rate = learning_rates[0]["learning_rate"]
        self.optimizer = torch.optim.SGD(
            self.model.parameters(),
            lr=self.epoch_base_learning_rate,
            momentum=momentum,
            dampening=0.0,
            weight_decay=weight_decay,
        )
        if optimizer_state:
            self.optimizer.load_state_dict(optimizer_state)

        # Prefetch the first batches.
        self.train_data_loader.fetch_batch_async(self.batch_size)
        self.val_data_loader.fetch_batch_async(self.batch_size)

    # ------------------------------------------------------------------
    def update_optim_config(self, epoch):
        """Apply the epoch's learning rate; reset optimizer state on a new regime."""
        learning_rate, is_new_regime = epoch_learning_rate(self.learning_rates, epoch)
        self.epoch_base_learning_rate = learning_rate
        for group in self.optimizer.param_groups:
            group["lr"] = learning_rate
            group["weight_decay"] = self.weight_decay
        if is_new_regime:
            self.optimizer.state.clear()
        return is_new_regime

    def train_epoch(self, epoch, num_batches):
        return self._train_or_evaluate_epoch(epoch, num_batches, train_mode=True)

    def evaluate_epoch(self, epoch, num_batches):
        return self._train_or_evaluate_epoch(epoch, num_batches, train_mode=False)

    def train_batch(self):
        """
        Returns:
            loss: summed criterion value over the computational chunks.
            outputs: (steps, batch, num_labels) or (batch, num_labels).
            labels: (steps, batch, num_labels) groundtruth.
        """
        images, labels = self._load_batch(self.train_data_loader, train_mode=True)

        self.optimizer.zero_grad()
        loss, outputs = 0.0, []
        for start in range(0, self.batch_size, self.computational_batch_size):
            end = min(start + self.computational_batch_size, self.batch_size)
            chunk_loss, chunk_outputs = self._forward_backward(
                images[:, start:end], labels[:, start:end], train_mode=True)
            loss += chunk_loss
            outputs.append(chunk_outputs)
        self.optimizer.step()

        batch_dim = 1 if outputs[0].dim() == 3 else 0
        return loss, torch.cat(outputs, dim=batch_dim), labels

    def evaluate_batch(self):
        images, labels = self._load_batch(self.val_data_loader, train_mode=False)
        with torch.no_grad():
            loss, outputs = self._forward_backward(images, labels, train_mode=False)
        return loss, outputs, labels

    def save(self, directory, epoch):
        """Write model and optimizer state to <directory>/model_<epoch>.pth."""
        self._clear_model_state()
        path = os.path.join(directory, f"model_{epoch}.pth")
        save_checkpoint(
            self.model, self.optimizer, epoch, path,
            extra={"learning_rate": self.epoch_base_learning_rate},
        )
        return path

    # ------------------------------------------------------------------
    def _clear_model_state(self):
        clear_state = getattr(self.model, "clear_state", None)
        if callable(clear_state):
            clear_state()

    def _train_or_evaluate_epoch(self, epoch, num_batches, train_mode):
        if train_mode:
            self._clear_model_state()
            self.model.train()
            self.update_optim_config(epoch)
        else:
            self.model.eval()

        mode_str = "TRAINING" if train_mode else "EVALUATION"
        process_batch = self.train_batch if train_mode else self.evaluate_batch
        epoch_start = time.time()

        predictions, groundtruth = [], []
        loss_epoch = 0.0

        pbar = tqdm(range(num_batches), desc=f"Epoch {epoch} [{mode_str.lower()}]")
        for batch_index in pbar:
            loss, batch_predictions, batch_groundtruth = process_batch()
            loss_epoch += loss

            # Only the last step of each sequence is scored.
            if batch_predictions.dim() == 3:
                batch_predictions = batch_predictions[-1]
            if batch_groundtruth.dim() == 3:
                batch_groundtruth = batch_groundtruth[-1]
            predictions.append(batch_predictions.float().cpu())
            groundtruth.append(batch_groundtruth.cpu())

            if train_mode:
                postfix = {"loss": f"{loss:.4f}", "lr": f"{self.epoch_base_learning_rate:.0e}"}
                if (batch_index + 1) % 10 == 0:
                    running_map = compute_mean_average_precision(
                        torch.cat(predictions), torch.cat(groundtruth))
                    postfix["mAP"] = f"{running_map:.4f}"
                pbar.set_postfix(**postfix)

        mean_average_precision = compute_mean_average_precision(
            torch.cat(predictions), torch.cat(groundtruth))
        average_loss = loss_epoch / num_batches if num_batches else float("inf")

        print(f"{time.strftime('%X')}: Epoch: [{epoch}][{mode_str} SUMMARY] "
              f"Total Time(s): {time.time() - epoch_start:.2f}\t"
              f"average loss (per batch): {average_loss:.5f}\t"
              f"mAP: {mean_average_precision:.5f}")
        return {"loss": average_loss, "mAP": mean_average_precision}

    def _load_batch(self, data_loader, train_mode):
        images_table, labels = data_loader.load_batch(self.batch_size)
        # Prefetch the next batch.
        data_loader.fetch_batch_async(self.batch_size)

        crop_h, crop_w = self.crop_size
        sequences = [
            augment_sequence([step[i] for step in images_table], crop_h, crop_w,
                             self.pixel_mean, train_mode=train_mode)
            for i in range(len(images_table[0]))
        ]
        # (batch, steps, C, H, W) -> (steps, batch, C, H, W)
        images = torch.stack(sequences, dim=1)
        return images, labels

    def _forward_backward(self, images, labels, train_mode):
        """
        Run forward (and, in train mode, backward) on one chunk.

        Args:
            images: (steps, chunk, C, H, W)
            labels: (steps, chunk, num_labels)
        """
        num_images = images.size(1)
        if self.input_dimension_permutation:
            images = images.permute(*self.input_dimension_permutation)

        images = images.to(self.device)
        labels = labels.to(self.device).float()

        outputs = self.model(images)
        # One prediction per sequence is compared to the last step's labels.
        if outputs.dim() == 3 and outputs.size(0) == 1 and labels.size(0) != 1:
            outputs = outputs[0]
        if outputs.dim() == 2 and labels.dim() == 3:
            labels = labels[-1]

        loss = self.criterion(outputs, labels) * (num_images / self.batch_size)
        if train_mode:
            loss.backward()
        return loss.item(), outputs.detach()


class SequentialTrainer(Trainer):
    """
    Streams each video through the model in chunks of sequence_length frames.

    Requires batch_size == 1, no input permutation, and a model with a
    forget() method (called whenever a video ends).
    """

    def __init__(self, model, criterion, train_data_loader, val_data_loader, **kwargs):
        permutation = kwargs.get("input_dimension_permutation")
        if permutation is not None and list(permutation) != list(range(len(permutation))):
            raise ValueError("SequentialTrainer does not support input_dimension_permutation")
        if kwargs.get("batch_size") != 1:
            raise ValueError("SequentialTrainer only supports batch size 1")
        if not callable(getattr(model, "forget", None)):
            raise ValueError("SequentialTrainer requires a model with a forget() method")
        super().__init__(model, criterion, train_data_loader, val_data_loader, **kwargs)

    def _train_or_evaluate_batch(self, train_mode):
        """
        Returns:
            loss, outputs (steps, 1, num_labels), labels (steps, 1, num_labels),
            sequence_ended. The first three are None when the batch only
            carries the end-of-sequence marker of the previous video.
        """
        data_loader = self.train_data_loader if train_mode else self.val_data_loader
        images_table, labels = data_loader.load_batch(1)
        data_loader.fetch_batch_async(1)

        if images_table[0][0] is END_OF_SEQUENCE:
            # The video ended with the previous batch.
            if any(step[0] is not END_OF_SEQUENCE for step in images_table):
                raise RuntimeError("Frames found after END_OF_SEQUENCE")
            self.model.forget()
            return None, None, None, True

        num_steps = len(images_table)
        num_valid_steps = next(
            (step for step, images in enumerate(images_table) if images[0] is END_OF_SEQUENCE),
            num_steps)
        sequence_ended = num_valid_steps != num_steps
        if any(images[0] is not END_OF_SEQUENCE for images in images_table[num_valid_steps:]):
            raise RuntimeError("Frames found after END_OF_SEQUENCE")

        crop_h, crop_w = self.crop_size
        frames = [images_table[step][0] for step in range(num_valid_steps)]
        images = augment_sequence(frames, crop_h, crop_w, self.pixel_mean,
                                  train_mode=train_mode).unsqueeze(1)
        labels = labels[:num_valid_steps]

        gpu_images = images.to(self.device)
        gpu_labels = labels.to(self.device).float()

        if train_mode:
            self.optimizer.zero_grad()
            outputs = self.model(gpu_images)
            outputs.retain_grad()
            loss = self.criterion(outputs, gpu_labels)
            loss.backward()
            grad_norm = outputs.grad.norm().item()
            if grad_norm <= 1e-5:
                print(f"⚠️  Criterion gradients small: {grad_norm:.2e}")
            self.optimizer.step()
        else:
            with torch.no_grad():
                outputs = self.model(gpu_images)
                loss = self.criterion(outputs, gpu_labels)

        if sequence_ended:
            self.model.forget()
        return loss.item(), outputs.detach(), labels, sequence_ended

    def _train_or_evaluate_epoch(self, epoch, num_sequences, train_mode):
        if train_mode:
            self._clear_model_state()
            self.model.train()
            self.update_optim_config(epoch)
        else:
            self.model.eval()

        mode_str = "TRAINING" if train_mode else "EVALUATION"
        epoch_start = time.time()
        predictions, groundtruth = [], []
        epoch_loss = 0.0

        pbar = tqdm(range(num_sequences), desc=f"Epoch {epoch} [{mode_str.lower()}]")
        for _ in pbar:
            sequence_predictions, sequence_groundtruth = [], []
            sequence_loss = 0.0
            sequence_ended = False
            while not sequence_ended:
                loss, batch_predictions, batch_groundtruth, sequence_ended = \
                    self._train_or_evaluate_batch(train_mode)
                if loss is None:
                    if not sequence_predictions:
                        # Marker closing the previous video; the next batch starts a new one.
                        sequence_ended = False
                        continue
                    break
                sequence_loss += loss
                # Drop the batch dimension.
                sequence_predictions.append(batch_predictions[:, 0].float().cpu())
                sequence_groundtruth.append(batch_groundtruth[:, 0].cpu())

            epoch_loss += sequence_loss
            sequence_predictions = torch.cat(sequence_predictions)
            sequence_groundtruth = torch.cat(sequence_groundtruth)
            if train_mode:
                sequence_map = compute_mean_average_precision(
                    sequence_predictions, sequence_groundtruth)
                pbar.set_postfix(loss=f"{sequence_loss:.4f}",
                                 seq_mAP=f"{sequence_map:.4f}",
                                 lr=f"{self.epoch_base_learning_rate:.0e}")
            predictions.append(sequence_predictions)
            groundtruth.append(sequence_groundtruth)

        mean_average_precision = compute_mean_average_precision(
            torch.cat(predictions), torch.cat(groundtruth))
        average_loss = epoch_loss / num_sequences if num_sequences else float("inf")

        print(f"{time.strftime('%X')}: Epoch: [{epoch}][{mode_str} SUMMARY] "
              f"Total Time(s): {time.time() - epoch_start:.2f}\t"
              f"average loss (per sequence): {average_loss:.5f}\t"
              f"mAP: {mean_average_precision:.5f}")
        return {"loss": average_loss, "mAP": mean_average_precision}
