import asyncio

import torch
import torch.nn as nn
from torchvision import datasets, transforms
from torch.utils.data import DataLoader

from progstream import convert, export_sequential, load_sequentially


def train_mlp(train_loader, epochs: int = 1) -> nn.Sequential:
    model = nn.Sequential(nn.Flatten(), nn.Linear(784, 128), nn.ReLU(), nn.Linear(128, 10))
    opt = torch.optim.Adam(model.parameters(), lr=1e-3)
    criterion = nn.CrossEntropyLoss()
    model.train()
    for _ in range(epochs):
        for data, target in train_loader:
            opt.zero_grad()
            loss = criterion(model(data), target)
            loss.backward()
            opt.step()
    return model.eval()


def main():
    torch.manual_seed(0)
    transform = transforms.Compose([transforms.ToTensor(), transforms.Normalize((0.1307,), (0.3081,))])
    train_dataset = datasets.MNIST(root="./data", train=True, download=True, transform=transform)
    test_dataset = datasets.MNIST(root="./data", train=False, download=True, transform=transform)
    train_loader = DataLoader(train_dataset, batch_size=128, shuffle=True)
    test_loader = DataLoader(test_dataset, batch_size=1000, shuffle=False)

    seq = train_mlp(train_loader)
    model_json, weights = export_sequential(seq, (1, 28, 28), name="mnist_mlp")
    manifest = convert(model_json, weights, "artifacts/mnist_mlp_2x8", interface=[2] * 8)
    print("Partition bytes:", [manifest.partition_size(i) for i in range(manifest.num_levels)])

    data, target = next(iter(test_loader))

    def report(model, is_last, step):
        preds = model.predict(data).argmax(dim=1)
        acc = 100.0 * (preds == target).float().mean().item()
        print(f"step={step} bits={2 * (step + 1)} acc={acc:.2f}%{' (final)' if is_last else ''}")

    asyncio.run(load_sequentially("artifacts/mnist_mlp_2x8", report))


if __name__ == "__main__":
    main()
